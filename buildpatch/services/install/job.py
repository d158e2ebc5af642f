"""Installation job definition and its on-disk layout."""

import shutil
from dataclasses import dataclass
from pathlib import Path

import structlog

from buildpatch.services.install.interfaces import BuildManifest

logger = structlog.get_logger()

RESUME_MARKER_NAME = "$movedMarker"


@dataclass(frozen=True)
class InstallationJob:
    """One install of ``target_manifest`` into ``install_directory``.

    ``current_manifest`` describes what is already installed and is None on a
    first install.
    """

    target_manifest: BuildManifest
    install_directory: Path
    staging_directory: Path
    current_manifest: BuildManifest | None = None

    def __post_init__(self):
        object.__setattr__(self, "install_directory", Path(self.install_directory))
        object.__setattr__(self, "staging_directory", Path(self.staging_directory))

    @property
    def data_staging_dir(self) -> Path:
        """Downloaded chunk data."""
        return self.staging_directory / "PatchData"

    @property
    def install_staging_dir(self) -> Path:
        """Constructed files waiting to be moved into the install directory."""
        return self.staging_directory / "Install"

    @property
    def resume_marker(self) -> Path:
        return self.install_directory / RESUME_MARKER_NAME

    @property
    def is_first_install(self) -> bool:
        return self.current_manifest is None

    @property
    def is_repair(self) -> bool:
        """True when the installed build is the target build (verify and re-fetch only)."""
        return self.current_manifest is not None and self.current_manifest.is_same_as(self.target_manifest)

    def init_directories(self) -> None:
        """Create the install and staging directories if they don't exist."""
        for d in [self.install_directory, self.data_staging_dir, self.install_staging_dir]:
            d.mkdir(parents=True, exist_ok=True)

    def cleanup_staging(self) -> None:
        """Remove the whole staging tree after a successful install."""
        if self.staging_directory.exists():
            shutil.rmtree(self.staging_directory, ignore_errors=True)

    def has_resume_marker(self) -> bool:
        return self.resume_marker.is_file()

    def create_resume_marker(self) -> None:
        self.resume_marker.parent.mkdir(parents=True, exist_ok=True)
        self.resume_marker.touch()
        logger.info("resume_marker_created", path=str(self.resume_marker))

    def clear_resume_marker(self) -> None:
        if self.resume_marker.exists():
            self.resume_marker.unlink()
            logger.info("resume_marker_cleared", path=str(self.resume_marker))
