"""Tests for the buildpatch command line."""

import json

from typer.testing import CliRunner

from buildpatch.cli import cli_app
from tests.fixtures.install import write_files

runner = CliRunner()

BUILD = {"game.bin": b"\x00\x01\x02game", "data/level1.pak": b"level one"}
QUIET = ["--log-level", "error"]


def _build_manifest(tmp_path, files, version):
    source = write_files(tmp_path / f"src-{version}", files)
    manifest_path = tmp_path / f"manifest-{version}.json"
    result = runner.invoke(cli_app, QUIET + [
        "build-manifest",
        "--source-dir", str(source),
        "--app-name", "Game",
        "--version", version,
        "--output", str(manifest_path),
        "--chunk-store", str(tmp_path / "chunks"),
    ])
    assert result.exit_code == 0, result.output
    return manifest_path


class TestBuildManifest:
    def test_writes_manifest(self, tmp_path):
        manifest_path = _build_manifest(tmp_path, BUILD, "1.0")
        data = json.loads(manifest_path.read_text())
        assert data["app_name"] == "Game"
        assert {f["filename"] for f in data["files"]} == set(BUILD)
        assert data["is_file_data"] is True

    def test_missing_source_dir(self, tmp_path):
        result = runner.invoke(cli_app, QUIET + [
            "build-manifest",
            "--source-dir", str(tmp_path / "nope"),
            "--app-name", "Game",
            "--version", "1.0",
            "--output", str(tmp_path / "m.json"),
        ])
        assert result.exit_code == 2


class TestInstallAndVerify:
    def test_install_then_verify(self, tmp_path):
        manifest_path = _build_manifest(tmp_path, BUILD, "1.0")
        install_dir = tmp_path / "game"

        result = runner.invoke(cli_app, QUIET + [
            "install",
            "--target", str(manifest_path),
            "--install-dir", str(install_dir),
            "--chunk-store", str(tmp_path / "chunks"),
        ])
        assert result.exit_code == 0, result.output
        assert "Installed Game 1.0" in result.output
        assert (install_dir / "data" / "level1.pak").read_bytes() == b"level one"
        assert not (tmp_path / "game.staging").exists()

        result = runner.invoke(cli_app, QUIET + [
            "verify", "--manifest", str(manifest_path), "--install-dir", str(install_dir),
        ])
        assert result.exit_code == 0
        assert "All 2 files verified" in result.output

    def test_verify_reports_corrupt_files(self, tmp_path):
        manifest_path = _build_manifest(tmp_path, BUILD, "1.0")
        install_dir = write_files(tmp_path / "game", {**BUILD, "game.bin": b"tampered"})

        result = runner.invoke(cli_app, QUIET + [
            "verify", "--manifest", str(manifest_path), "--install-dir", str(install_dir),
        ])
        assert result.exit_code == 1
        assert "game.bin" in result.output

    def test_invalid_manifest(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{")
        result = runner.invoke(cli_app, QUIET + [
            "install",
            "--target", str(bad),
            "--install-dir", str(tmp_path / "game"),
            "--chunk-store", str(tmp_path / "chunks"),
        ])
        assert result.exit_code == 2
        assert "Invalid JSON" in result.output
