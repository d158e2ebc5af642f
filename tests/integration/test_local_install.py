"""End-to-end installs with the filesystem-backed collaborators."""

import pytest

from buildpatch.services.install import (
    InstallationJob,
    InstallationOrchestrator,
    InstallErrorType,
    LocalCollaborators,
)
from tests.fixtures.install import fast_settings, make_build, write_files

V1 = {"fileA": b"A-v1 contents", "fileC": b"C is unchanged", "docs/readme.txt": b"read me"}
V2 = {"fileA": b"A-v2 contents!", "fileB": b"brand new B", "fileC": b"C is unchanged", "docs/readme.txt": b"read me"}


@pytest.fixture
def chunk_store(tmp_path):
    return tmp_path / "chunks"


def _install(install_dir, staging_dir, chunk_store, target, current=None, **settings_overrides):
    job = InstallationJob(
        target_manifest=target,
        install_directory=install_dir,
        staging_directory=staging_dir,
        current_manifest=current,
    )
    orchestrator = InstallationOrchestrator(
        job,
        LocalCollaborators(chunk_store).collaborators(),
        settings=fast_settings(**settings_overrides),
    )
    orchestrator.start()
    assert orchestrator.wait(timeout=30)
    return orchestrator


def _assert_installed(install_dir, files):
    for path, content in files.items():
        assert (install_dir / path).read_bytes() == content


class TestFileDataInstall:
    def test_first_install(self, tmp_path, install_dir, staging_dir, chunk_store):
        v1 = make_build(tmp_path, V1, "1", chunk_store)

        orchestrator = _install(install_dir, staging_dir, chunk_store, v1)

        assert orchestrator.get_stats().process_success
        _assert_installed(install_dir, V1)
        assert not staging_dir.exists()
        stats = orchestrator.get_stats()
        assert stats.num_chunks_downloaded == 3
        assert stats.total_downloaded_data == sum(len(c) for c in V1.values())

    def test_patch_v1_to_v2(self, tmp_path, install_dir, staging_dir, chunk_store):
        """Only the changed and new files are built and moved."""
        v1 = make_build(tmp_path, V1, "1", chunk_store)
        v2 = make_build(tmp_path, V2, "2", chunk_store)
        write_files(install_dir, V1)

        orchestrator = _install(install_dir, staging_dir, chunk_store, v2, current=v1)

        assert orchestrator.get_stats().process_success
        _assert_installed(install_dir, V2)
        assert orchestrator.files_installed == {"fileA", "fileB"}
        stats = orchestrator.get_stats()
        assert stats.num_files_outdated == 2
        assert stats.app_installed_version == "1"

    def test_dropped_file_is_removed(self, tmp_path, install_dir, staging_dir, chunk_store):
        v2 = make_build(tmp_path, V2, "2", chunk_store)
        v3_files = {k: v for k, v in V2.items() if k != "fileB"}
        v3 = make_build(tmp_path, v3_files, "3", chunk_store)
        write_files(install_dir, V2)

        orchestrator = _install(install_dir, staging_dir, chunk_store, v3, current=v2)

        assert orchestrator.get_stats().process_success
        assert not (install_dir / "fileB").exists()
        assert orchestrator.get_stats().num_files_to_remove == 1

    def test_user_modified_file_is_backed_up(self, tmp_path, install_dir, staging_dir, chunk_store):
        v1 = make_build(tmp_path, V1, "1", chunk_store)
        v2 = make_build(tmp_path, V2, "2", chunk_store)
        write_files(install_dir, {**V1, "fileA": b"my own edits"})
        backup_dir = tmp_path / "backup"

        orchestrator = _install(
            install_dir, staging_dir, chunk_store, v2, current=v1, buildpatch_backup_dir=str(backup_dir),
        )

        assert orchestrator.get_stats().process_success
        assert (backup_dir / "fileA").read_bytes() == b"my own edits"
        _assert_installed(install_dir, V2)

    def test_missing_chunk_fails_download(self, tmp_path, install_dir, staging_dir, chunk_store):
        v1 = make_build(tmp_path, V1, "1", chunk_store)
        v2 = make_build(tmp_path, V2, "2", chunk_store)
        write_files(install_dir, V1)
        (chunk_store / v2.get_file("fileB").chunks[0]).unlink()

        orchestrator = _install(
            install_dir, staging_dir, chunk_store, v2, current=v1, buildpatch_install_retries=2,
        )

        stats = orchestrator.get_stats()
        assert not stats.process_success
        assert stats.failure_type is InstallErrorType.DOWNLOAD_ERROR
        assert stats.failure_reason.startswith("DL: ")
        assert orchestrator.has_error()


class TestChunkDataInstall:
    def test_patch_recycles_installed_chunks(self, tmp_path, install_dir, staging_dir, chunk_store):
        """Chunks still present in the installed build are reused instead of downloaded."""
        v1 = make_build(tmp_path, {"fileA": b"AAAABBBBCCCC"}, "1", chunk_store, chunk_size=4)
        v2 = make_build(tmp_path, {"fileA": b"AAAABBBBDDDD"}, "2", chunk_store, chunk_size=4)

        first = _install(install_dir, staging_dir, chunk_store, v1)
        assert first.get_stats().process_success

        orchestrator = _install(install_dir, staging_dir, chunk_store, v2, current=v1)

        stats = orchestrator.get_stats()
        assert stats.process_success
        assert (install_dir / "fileA").read_bytes() == b"AAAABBBBDDDD"
        assert stats.num_chunks_required == 3
        assert stats.chunks_locally_available == 2
        assert stats.chunks_queued_for_download == 1
        assert stats.num_chunks_recycled == 2
        assert stats.num_chunks_downloaded == 1
