"""Runs the build's prerequisite installer after a first install."""

import shlex
import subprocess
from pathlib import Path

import structlog

from buildpatch.config import Settings, settings as default_settings
from buildpatch.services.install.errors import InstallErrorState, InstallErrorType
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.progress import ProgressState, ProgressTracker

logger = structlog.get_logger()


class PrerequisiteRunner:
    """Launches the prerequisite executable once and waits for it to exit."""

    def __init__(
        self,
        job: InstallationJob,
        errors: InstallErrorState,
        progress: ProgressTracker,
        settings: Settings | None = None,
    ):
        self._job = job
        self._errors = errors
        self._progress = progress
        self._settings = settings or default_settings
        self.restart_required = False

    def resolve_command(self) -> list[str]:
        """Absolute executable path followed by its arguments."""
        target = self._job.target_manifest
        executable = (self._job.install_directory / target.prereq_path).resolve()
        return [str(executable), *shlex.split(target.prereq_args or "")]

    def run(self) -> bool:
        command = self.resolve_command()
        executable = Path(command[0])
        logger.info("prerequisites_starting", command=command)
        self._progress.set_state_progress(ProgressState.PREREQUISITES_INSTALL, 0.0)

        try:
            proc = subprocess.Popen(command, cwd=str(executable.parent))
        except OSError as e:
            logger.error("prerequisites_launch_failed", executable=str(executable), error=str(e))
            self._errors.set_fatal_error(
                InstallErrorType.PREREQUISITE_ERROR,
                f"Failed to start the prerequisites installer: {e}",
            )
            return False

        returncode = proc.wait()
        if returncode == self._settings.buildpatch_prereq_restart_code:
            self.restart_required = True
            logger.info("prerequisites_restart_required", returncode=returncode)
        elif returncode != 0:
            logger.error("prerequisites_failed", returncode=returncode)
            self._errors.set_fatal_error(
                InstallErrorType.PREREQUISITE_ERROR,
                f"Prerequisites installer failed with code {returncode}",
            )
            return False

        self._progress.set_state_progress(ProgressState.PREREQUISITES_INSTALL, 1.0)
        logger.info("prerequisites_complete", returncode=returncode)
        return True
