"""Build installation services."""

from buildpatch.services.install.errors import InstallErrorType
from buildpatch.services.install.interfaces import Collaborators, InstallContext
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.local import LocalCollaborators
from buildpatch.services.install.manifest import Manifest
from buildpatch.services.install.orchestrator import (
    InstallationOrchestrator,
    InstallPhase,
    start_installation,
)
from buildpatch.services.install.registry import InstallationRegistry
from buildpatch.services.install.stats import BuildStats

__all__ = [
    "BuildStats",
    "Collaborators",
    "InstallContext",
    "InstallErrorType",
    "InstallPhase",
    "InstallationJob",
    "InstallationOrchestrator",
    "InstallationRegistry",
    "LocalCollaborators",
    "Manifest",
    "start_installation",
]
