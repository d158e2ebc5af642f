"""Post-install verification of the whole target build."""

import time
from dataclasses import dataclass, field

import structlog

from buildpatch.services.install import fileops
from buildpatch.services.install.backup import BackupRelocationManager
from buildpatch.services.install.control import ControlState
from buildpatch.services.install.errors import InstallErrorState, InstallErrorType
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.locks import exclusive_section
from buildpatch.services.install.progress import ProgressState, ProgressTracker

logger = structlog.get_logger()


@dataclass
class VerificationResult:
    success: bool
    corrupt_files: list[str] = field(default_factory=list)
    elapsed_seconds: float = 0.0


class VerificationEngine:
    """Checks every target file on disk and clears out the ones that are wrong."""

    def __init__(
        self,
        job: InstallationJob,
        errors: InstallErrorState,
        control: ControlState,
        progress: ProgressTracker,
        backup: BackupRelocationManager,
    ):
        self._job = job
        self._errors = errors
        self._control = control
        self._progress = progress
        self._backup = backup

    def verify(self) -> VerificationResult:
        with exclusive_section("verification", self._job.install_directory):
            return self._verify()

    def _verify(self) -> VerificationResult:
        self._progress.set_state_progress(ProgressState.BUILD_VERIFICATION, 0.0)
        logger.info("verification_starting", install_dir=str(self._job.install_directory))

        started = time.monotonic()
        outcome = self._job.target_manifest.verify_against_directory(
            self._job.install_directory,
            progress=lambda pct: self._progress.set_state_progress(ProgressState.BUILD_VERIFICATION, pct),
            pause_check=lambda: self._control.is_paused,
            should_abort=self._should_abort,
        )
        elapsed = time.monotonic() - started - outcome.paused_seconds

        corrupt = list(outcome.corrupt_files)
        if corrupt:
            self._errors.set_fatal_error(
                InstallErrorType.BUILD_VERIFY_FAIL,
                f"Build verification failed on {len(corrupt)} file(s)",
            )
        self._progress.set_state_progress(ProgressState.BUILD_VERIFICATION, 1.0)

        if not self._should_abort():
            for filename in corrupt:
                self._backup.backup_file_if_necessary(filename, discovered_by_verification=True)
                fileops.delete_file(self._job.install_directory / filename)
                fileops.delete_file(self._job.install_staging_dir / filename)

        logger.info(
            "verification_complete",
            success=not corrupt,
            corrupt_files=len(corrupt),
            elapsed=round(elapsed, 3),
        )
        return VerificationResult(success=not corrupt, corrupt_files=corrupt, elapsed_seconds=elapsed)

    def _should_abort(self) -> bool:
        return self._control.is_cancelling or self._errors.is_cancelled()
