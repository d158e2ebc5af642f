"""Post-install file attribute pass."""

from pathlib import Path

import structlog

from buildpatch.services.install import fileops
from buildpatch.services.install.errors import InstallErrorState
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.manifest import FileEntry

logger = structlog.get_logger()


class FileAttributeApplier:
    """Applies read-only, compressed and executable flags from the target build."""

    def __init__(self, job: InstallationJob, errors: InstallErrorState):
        self._job = job
        self._errors = errors

    def run(self, force: bool = False) -> bool:
        """Apply attributes. Never fails the install; problems are logged."""
        target = self._job.target_manifest
        applied = 0
        for filename in target.file_list():
            if self._errors.has_fatal_error():
                break
            entry = target.get_file(filename)
            if entry.has_attributes or force:
                self.apply(self._job.install_directory / filename, entry)
                applied += 1

        # Attributes dropped between builds must be cleared too
        current = self._job.current_manifest
        if current is not None and not force:
            for filename in current.file_list():
                if self._errors.has_fatal_error():
                    break
                old = current.get_file(filename)
                new = target.get_file(filename)
                if new is None:
                    continue
                removed = (old.read_only and not new.read_only) or (old.compressed and not new.compressed)
                if removed:
                    self.apply(self._job.install_directory / filename, new)
                    applied += 1

        logger.info("file_attributes_applied", files=applied, forced=force)
        return True

    @staticmethod
    def apply(path: Path, entry: FileEntry) -> None:
        if not path.exists():
            logger.warning("attribute_target_missing", path=str(path))
            return
        # Must be writable to change the other attributes
        fileops.set_read_only(path, False)
        fileops.set_compressed(path, entry.compressed)
        if not fileops.set_read_only(path, entry.read_only):
            logger.warning("set_read_only_flag_failed", path=str(path))
        if entry.unix_executable and not fileops.set_executable(path):
            logger.warning("set_executable_flag_failed", path=str(path))
