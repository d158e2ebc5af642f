"""Unit tests for prerequisite installs (buildpatch/services/install/prerequisites.py)."""

from unittest.mock import MagicMock, patch

from buildpatch.services.install.errors import InstallErrorState, InstallErrorType
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.prerequisites import PrerequisiteRunner
from buildpatch.services.install.progress import ProgressState, ProgressTracker
from tests.fixtures.install import fast_settings, make_manifest

POPEN = "buildpatch.services.install.prerequisites.subprocess.Popen"


def _make_runner(install_dir, staging_dir):
    target = make_manifest({"redist/setup.exe": b"MZ"}, prereq_path="redist/setup.exe", prereq_args='/quiet "/log x.txt"')
    job = InstallationJob(target_manifest=target, install_directory=install_dir, staging_directory=staging_dir)
    return PrerequisiteRunner(job, InstallErrorState(), ProgressTracker(), settings=fast_settings())


def _proc(returncode):
    proc = MagicMock()
    proc.wait.return_value = returncode
    return proc


class TestResolveCommand:
    def test_absolute_path_and_args(self, install_dir, staging_dir):
        command = _make_runner(install_dir, staging_dir).resolve_command()
        assert command[0] == str((install_dir / "redist" / "setup.exe").resolve())
        assert command[1:] == ["/quiet", "/log x.txt"]


class TestRun:
    def test_success(self, install_dir, staging_dir):
        runner = _make_runner(install_dir, staging_dir)
        with patch(POPEN, return_value=_proc(0)) as popen:
            assert runner.run()
        assert popen.call_args.kwargs["cwd"] == str((install_dir / "redist").resolve())
        assert not runner.restart_required
        assert runner._progress.get_state_progress(ProgressState.PREREQUISITES_INSTALL) == 1.0

    def test_restart_required_counts_as_success(self, install_dir, staging_dir):
        runner = _make_runner(install_dir, staging_dir)
        with patch(POPEN, return_value=_proc(3010)):
            assert runner.run()
        assert runner.restart_required
        assert not runner._errors.has_fatal_error()

    def test_failure_exit_code(self, install_dir, staging_dir):
        runner = _make_runner(install_dir, staging_dir)
        with patch(POPEN, return_value=_proc(1603)):
            assert not runner.run()
        assert runner._errors.error_type is InstallErrorType.PREREQUISITE_ERROR
        assert "1603" in runner._errors.message

    def test_launch_failure(self, install_dir, staging_dir):
        runner = _make_runner(install_dir, staging_dir)
        with patch(POPEN, side_effect=FileNotFoundError("no such file")):
            assert not runner.run()
        assert runner._errors.error_type is InstallErrorType.PREREQUISITE_ERROR
