"""Backup of user-modified files and relocation of staged files into the install."""

import time
from collections.abc import Callable
from pathlib import Path

import structlog

from buildpatch.config import Settings, settings as default_settings
from buildpatch.services.install import fileops
from buildpatch.services.install.errors import InstallErrorState, InstallErrorType
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.manifest import (
    get_removable_files,
    is_file_outdated,
    verify_file,
)
from buildpatch.services.install.progress import ProgressState, ProgressTracker

logger = structlog.get_logger()


class BackupRelocationManager:
    """Decides which installed files must be preserved and moves staged files into place."""

    def __init__(
        self,
        job: InstallationJob,
        errors: InstallErrorState,
        progress: ProgressTracker,
        settings: Settings | None = None,
        on_stats: Callable[..., None] | None = None,
    ):
        self._job = job
        self._errors = errors
        self._progress = progress
        self._settings = settings or default_settings
        self._on_stats = on_stats or (lambda **kwargs: None)
        backup_dir = self._settings.buildpatch_backup_dir
        self._backup_dir = Path(backup_dir) if backup_dir else None
        # Files this run moved into the install directory
        self.files_installed: set[str] = set()

    @property
    def backup_dir(self) -> Path | None:
        return self._backup_dir

    def needs_backup(self, filename: str, discovered_by_verification: bool = False) -> bool:
        """Whether the installed copy of ``filename`` must be moved to the backup directory."""
        if self._backup_dir is None:
            return False

        installed = self._job.install_directory / filename
        if not installed.is_file():
            return False
        if (self._backup_dir / filename).exists():
            return False
        if filename in self.files_installed:
            return False

        current = self._job.current_manifest
        target = self._job.target_manifest

        # Found corrupt by verification and not written by this run, so the
        # bytes on disk came from somewhere else.
        if discovered_by_verification:
            return True

        old = current.get_file(filename) if current is not None else None
        new = target.get_file(filename)
        installed_size = fileops.file_size(installed)
        original_size = old.size if old is not None else -1
        new_size = new.size if new is not None else -1
        size_differs = installed_size != original_size and installed_size != new_size
        if size_differs:
            return True
        old_hash = old.sha256 if old is not None else ""
        new_hash = new.sha256 if new is not None else ""
        return verify_file(installed, old_hash, new_hash) == 0

    def backup_file_if_necessary(self, filename: str, discovered_by_verification: bool = False) -> bool:
        """Move the installed file to the backup directory when warranted.

        Returns False only when a required backup could not be made.
        """
        if not self.needs_backup(filename, discovered_by_verification):
            return True

        current = self._job.current_manifest
        unrelated = (
            discovered_by_verification
            and current is not None
            and not is_file_outdated(current, self._job.target_manifest, filename)
        )
        logger.info("backing_up_file", file=filename, unrelated_to_patch=unrelated)
        success = fileops.move_file(
            self._backup_dir / filename,
            self._job.install_directory / filename,
        )
        if not success:
            logger.warning("backup_failed", file=filename)
        return success

    def run_backup_and_move(self) -> bool:
        """Remove files dropped from the build, then relocate every staged file."""
        logger.info("backup_and_move_starting")
        if self._errors.has_fatal_error():
            logger.info("backup_and_move_skipped", reason=self._errors.error_string())
            return False

        self._remove_old_files()

        filenames = self._job.target_manifest.file_list()
        total = float(len(filenames)) or 1.0
        marker_saved = False
        move_success = True
        self._progress.set_state_progress(ProgressState.MOVING_TO_INSTALL, 0.0)

        for index, filename in enumerate(filenames):
            if not move_success or self._errors.has_fatal_error():
                break
            src = self._job.install_staging_dir / filename
            if not src.is_file():
                # Not constructed this attempt (unchanged file)
                self._progress.set_state_progress(ProgressState.MOVING_TO_INSTALL, index / total)
                continue

            if not marker_saved:
                marker_saved = True
                self._job.create_resume_marker()
                if self._progress.get_state_weight(ProgressState.MOVING_TO_INSTALL) <= 0.0:
                    self._progress.set_state_weight(ProgressState.MOVING_TO_INSTALL, 0.1)

            self.backup_file_if_necessary(filename)
            move_success = self._relocate(filename)
            if move_success:
                self.files_installed.add(filename)
                self._progress.set_state_progress(ProgressState.MOVING_TO_INSTALL, index / total)
            else:
                logger.error("relocation_failed", file=filename)
                self._errors.set_fatal_error(
                    InstallErrorType.MOVE_FILE_TO_INSTALL,
                    f"Failed to move {Path(filename).name} into the installation.",
                )

        move_success = move_success and not self._errors.has_fatal_error()
        if move_success:
            self._progress.set_state_progress(ProgressState.MOVING_TO_INSTALL, 1.0)
        logger.info("backup_and_move_complete", success=move_success, moved=len(self.files_installed))
        return move_success

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _remove_old_files(self) -> None:
        current = self._job.current_manifest
        removable = get_removable_files(current, self._job.target_manifest) if current is not None else []
        self._on_stats(num_files_to_remove=len(removable))
        for filename in removable:
            self.backup_file_if_necessary(filename)
            deleted = fileops.delete_file(self._job.install_directory / filename)
            logger.info("old_file_removed", file=filename, deleted=deleted)

    def _relocate(self, filename: str) -> bool:
        """Move a staged file into place, falling back to copy, with retries."""
        src = self._job.install_staging_dir / filename
        dest = self._job.install_directory / filename
        retries = self._settings.buildpatch_move_retries

        success = fileops.move_file(dest, src)
        while not success and retries > 0:
            retries -= 1
            logger.warning("move_failed_trying_copy", file=filename)
            success = fileops.copy_file(dest, src)
            if success:
                fileops.delete_file(src)
            else:
                logger.warning(
                    "copy_failed_retrying",
                    file=filename,
                    delay=self._settings.buildpatch_move_retry_delay,
                )
                time.sleep(self._settings.buildpatch_move_retry_delay)
                retries -= 1
                success = fileops.move_file(dest, src)
        return success
