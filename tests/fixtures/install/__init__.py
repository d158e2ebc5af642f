"""Test fixtures and helpers for installer tests."""

import hashlib
from pathlib import Path

from buildpatch.config import Settings
from buildpatch.services.install.manifest import ChunkInfo, FileEntry, Manifest


def make_manifest(
    files: dict[str, bytes],
    version: str = "1.0.0",
    app_name: str = "TestApp",
    prereq_path: str = "",
    prereq_args: str = "",
    attributes: dict[str, dict] | None = None,
) -> Manifest:
    """Build an in-memory file-data manifest.

    Args:
        files: Dict of {relative_path: content_bytes} making up the build.
        version: Build version string.
        app_name: Application name.
        prereq_path: Prerequisite installer path relative to the install.
        prereq_args: Prerequisite installer arguments.
        attributes: Optional {relative_path: {"read_only": True, ...}} overrides.

    Returns:
        A Manifest with one chunk per file, named by its SHA-256.
    """
    attributes = attributes or {}
    entries = []
    chunks = {}
    for path, content in files.items():
        digest = hashlib.sha256(content).hexdigest()
        entries.append(FileEntry(
            filename=path,
            size=len(content),
            sha256=digest,
            chunks=[digest],
            **attributes.get(path, {}),
        ))
        chunks[digest] = ChunkInfo(id=digest, sha256=digest, size=len(content))
    return Manifest(
        app_name=app_name,
        version=version,
        prereq_path=prereq_path,
        prereq_args=prereq_args,
        files=entries,
        chunks=list(chunks.values()),
    )


def write_files(root: Path, files: dict[str, bytes]) -> Path:
    """Write {relative_path: content} under ``root`` and return it."""
    root.mkdir(parents=True, exist_ok=True)
    for path, content in files.items():
        full = root / path
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(content)
    return root


def make_build(
    tmp_path: Path,
    files: dict[str, bytes],
    version: str,
    chunk_store: Path,
    chunk_size: int | None = None,
) -> Manifest:
    """Write a build directory for ``version`` and describe it, filling ``chunk_store``."""
    build_dir = write_files(tmp_path / f"build-{version}", files)
    return Manifest.from_directory(
        build_dir,
        app_name="TestApp",
        version=version,
        chunk_store=chunk_store,
        chunk_size=chunk_size,
    )


def fast_settings(**overrides) -> Settings:
    """Settings with no retry delays and a short poll interval."""
    values = {
        "buildpatch_move_retry_delay": 0.0,
        "buildpatch_poll_interval": 0.01,
    }
    values.update(overrides)
    return Settings(**values)
