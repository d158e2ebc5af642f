"""Unit tests for the attribute pass (buildpatch/services/install/attributes.py)."""

import os
import stat
import sys
from unittest.mock import patch

import pytest

from buildpatch.services.install.attributes import FileAttributeApplier
from buildpatch.services.install.errors import InstallErrorState
from buildpatch.services.install.job import InstallationJob
from tests.fixtures.install import make_manifest, write_files

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")


def _make_applier(install_dir, staging_dir, target, current=None):
    job = InstallationJob(
        target_manifest=target,
        install_directory=install_dir,
        staging_directory=staging_dir,
        current_manifest=current,
    )
    return FileAttributeApplier(job, InstallErrorState())


def _is_writable(path):
    return bool(os.stat(path).st_mode & stat.S_IWUSR)


class TestAttributePass:
    @posix_only
    def test_applies_read_only_and_executable(self, install_dir, staging_dir):
        target = make_manifest(
            {"ro.dat": b"1", "run.sh": b"2", "plain": b"3"},
            attributes={"ro.dat": {"read_only": True}, "run.sh": {"unix_executable": True}},
        )
        write_files(install_dir, {"ro.dat": b"1", "run.sh": b"2", "plain": b"3"})

        assert _make_applier(install_dir, staging_dir, target).run()

        assert not _is_writable(install_dir / "ro.dat")
        assert os.stat(install_dir / "run.sh").st_mode & stat.S_IXUSR
        assert _is_writable(install_dir / "plain")

    @posix_only
    def test_clears_removed_read_only(self, install_dir, staging_dir):
        """A file that stops being read-only in the new build becomes writable again."""
        current = make_manifest({"a": b"1"}, attributes={"a": {"read_only": True}})
        target = make_manifest({"a": b"1"}, version="2")
        write_files(install_dir, {"a": b"1"})
        os.chmod(install_dir / "a", stat.S_IRUSR)

        _make_applier(install_dir, staging_dir, target, current).run()

        assert _is_writable(install_dir / "a")

    def test_force_touches_every_file(self, install_dir, staging_dir):
        target = make_manifest({"a": b"1", "b": b"2"})
        write_files(install_dir, {"a": b"1", "b": b"2"})
        applier = _make_applier(install_dir, staging_dir, target)

        with patch.object(FileAttributeApplier, "apply") as apply:
            assert applier.run(force=True)

        assert apply.call_count == 2

    def test_files_without_attributes_are_skipped(self, install_dir, staging_dir):
        target = make_manifest({"a": b"1"})
        write_files(install_dir, {"a": b"1"})
        applier = _make_applier(install_dir, staging_dir, target)

        with patch.object(FileAttributeApplier, "apply") as apply:
            applier.run()

        apply.assert_not_called()

    def test_missing_file_does_not_fail(self, install_dir, staging_dir):
        target = make_manifest({"a": b"1"}, attributes={"a": {"read_only": True}})
        assert _make_applier(install_dir, staging_dir, target).run()
