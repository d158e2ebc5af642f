"""Registry of already-installed builds available for chunk recycling."""

import threading
from pathlib import Path

import structlog

from buildpatch.services.install.interfaces import BuildManifest

logger = structlog.get_logger()


class InstallationRegistry:
    """Maps install directories to the manifest installed there."""

    def __init__(self):
        self._lock = threading.Lock()
        self._installations: dict[Path, BuildManifest] = {}

    def register(self, manifest: BuildManifest, install_dir: Path) -> None:
        key = Path(install_dir).resolve()
        with self._lock:
            self._installations[key] = manifest
        logger.info(
            "installation_registered",
            app_name=manifest.app_name,
            version=manifest.version,
            install_dir=str(key),
        )

    def get(self, install_dir: Path) -> BuildManifest | None:
        with self._lock:
            return self._installations.get(Path(install_dir).resolve())

    def installations(self) -> dict[Path, BuildManifest]:
        with self._lock:
            return dict(self._installations)
