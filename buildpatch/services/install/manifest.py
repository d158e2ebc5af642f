"""Build manifests: file entries, chunk references, diffing and verification."""

import hashlib
import json
import os
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, PrivateAttr, ValidationError

from buildpatch.core.exceptions import ManifestError
from buildpatch.services.install.interfaces import BuildManifest

logger = structlog.get_logger()

PAUSE_POLL_INTERVAL = 0.1


class FileEntry(BaseModel):
    """A single file of a build."""

    filename: str
    size: int
    sha256: str
    chunks: list[str] = Field(default_factory=list)
    read_only: bool = False
    compressed: bool = False
    unix_executable: bool = False

    @property
    def has_attributes(self) -> bool:
        return self.read_only or self.compressed or self.unix_executable


class ChunkInfo(BaseModel):
    """A content-addressed unit of data referenced by file entries."""

    id: str
    sha256: str
    size: int


class Manifest(BaseModel):
    """Immutable description of one build of an application."""

    app_name: str
    version: str
    is_file_data: bool = True
    prereq_path: str = ""
    prereq_args: str = ""
    files: list[FileEntry] = Field(default_factory=list)
    chunks: list[ChunkInfo] = Field(default_factory=list)

    model_config = {"frozen": True}

    _file_lookup: dict[str, FileEntry] = PrivateAttr(default_factory=dict)
    _chunk_lookup: dict[str, ChunkInfo] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context) -> None:
        self._file_lookup = {f.filename: f for f in self.files}
        self._chunk_lookup = {c.id: c for c in self.chunks}

    # ── Loading / saving ─────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        """Parse a manifest JSON file."""
        path = Path(path)
        if not path.exists():
            raise ManifestError(message=f"Manifest file not found: {path}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            manifest = cls(**raw)
        except json.JSONDecodeError as e:
            raise ManifestError(message=f"Invalid JSON in manifest: {e}")
        except (TypeError, ValidationError) as e:
            raise ManifestError(message=f"Manifest does not match the schema: {e}")
        logger.info(
            "manifest_loaded",
            app_name=manifest.app_name,
            version=manifest.version,
            files=manifest.num_files,
        )
        return manifest

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def from_directory(
        cls,
        source_dir: Path,
        app_name: str,
        version: str,
        chunk_store: Path | None = None,
        prereq_path: str = "",
        prereq_args: str = "",
        chunk_size: int | None = None,
    ) -> "Manifest":
        """Describe every file under ``source_dir`` as a build.

        Without ``chunk_size`` this is a file-data build: each file becomes
        one chunk named by its SHA-256. With ``chunk_size`` files are split
        into content-addressed chunks of at most that many bytes, which lets
        later installs recycle chunks from an existing installation. When
        ``chunk_store`` is given the chunk data is written there so a local
        downloader can serve it.
        """
        source_dir = Path(source_dir)
        files: list[FileEntry] = []
        chunks: dict[str, ChunkInfo] = {}

        for root, dirs, names in os.walk(source_dir):
            dirs.sort()
            for name in sorted(names):
                file_path = Path(root) / name
                rel_path = file_path.relative_to(source_dir).as_posix()
                digest = sha256_file(file_path)
                size = file_path.stat().st_size

                if chunk_size:
                    file_chunks = _split_into_chunks(file_path, chunk_size, chunk_store)
                else:
                    file_chunks = [ChunkInfo(id=digest, sha256=digest, size=size)]
                    if chunk_store is not None:
                        target = Path(chunk_store) / digest
                        if not target.exists():
                            target.parent.mkdir(parents=True, exist_ok=True)
                            shutil.copyfile(file_path, target)

                files.append(FileEntry(
                    filename=rel_path,
                    size=size,
                    sha256=digest,
                    chunks=[c.id for c in file_chunks],
                    read_only=not os.access(file_path, os.W_OK),
                    unix_executable=os.name != "nt" and os.access(file_path, os.X_OK),
                ))
                for chunk in file_chunks:
                    chunks.setdefault(chunk.id, chunk)

        logger.info(
            "manifest_built",
            app_name=app_name,
            version=version,
            files=len(files),
            chunks=len(chunks),
        )
        return cls(
            app_name=app_name,
            version=version,
            is_file_data=not chunk_size,
            prereq_path=prereq_path,
            prereq_args=prereq_args,
            files=files,
            chunks=list(chunks.values()),
        )

    # ── Lookup ───────────────────────────────────────────────────────────────

    @property
    def num_files(self) -> int:
        return len(self.files)

    def file_list(self) -> list[str]:
        return [f.filename for f in self.files]

    def get_file(self, filename: str) -> FileEntry | None:
        return self._file_lookup.get(filename)

    def get_chunk(self, chunk_id: str) -> ChunkInfo | None:
        return self._chunk_lookup.get(chunk_id)

    def is_same_as(self, other: BuildManifest) -> bool:
        """Same app, version and file contents."""
        if other is None:
            return False
        if self.app_name != other.app_name or self.version != other.version:
            return False
        if self.num_files != other.num_files:
            return False
        for entry in self.files:
            theirs = other.get_file(entry.filename)
            if theirs is None or theirs.sha256 != entry.sha256 or theirs.size != entry.size:
                return False
        return True

    def get_chunks_required_for_files(self, filenames: Sequence[str]) -> list[str]:
        """Unique chunk ids making up ``filenames``, in first-use order."""
        required: dict[str, None] = {}
        for filename in filenames:
            entry = self.get_file(filename)
            if entry is None:
                continue
            for chunk_id in entry.chunks:
                required.setdefault(chunk_id, None)
        return list(required)

    def get_data_size(self, chunk_ids: Sequence[str]) -> int:
        total = 0
        for chunk_id in chunk_ids:
            chunk = self.get_chunk(chunk_id)
            if chunk is not None:
                total += chunk.size
        return total

    # ── Verification ─────────────────────────────────────────────────────────

    def verify_against_directory(
        self,
        install_dir: Path,
        progress: Callable[[float], None] | None = None,
        pause_check: Callable[[], bool] | None = None,
        should_abort: Callable[[], bool] | None = None,
    ) -> "VerifyOutcome":
        """Check size and hash of every file under ``install_dir``.

        Walks files in manifest order. Blocks between files while
        ``pause_check`` returns True and reports that time separately. When
        ``should_abort`` returns True the walk stops and every file not yet
        checked is reported as corrupt.
        """
        install_dir = Path(install_dir)
        outcome = VerifyOutcome()
        total = len(self.files)

        for index, entry in enumerate(self.files):
            if pause_check is not None and pause_check():
                paused_from = time.monotonic()
                while pause_check() and not (should_abort and should_abort()):
                    time.sleep(PAUSE_POLL_INTERVAL)
                outcome.paused_seconds += time.monotonic() - paused_from

            if should_abort is not None and should_abort():
                remaining = [f.filename for f in self.files[index:]]
                outcome.corrupt_files.extend(remaining)
                logger.info("verification_aborted", unchecked=len(remaining))
                break

            if not _verify_entry(install_dir / entry.filename, entry):
                outcome.corrupt_files.append(entry.filename)

            if progress is not None:
                progress((index + 1) / total)

        return outcome


@dataclass
class VerifyOutcome:
    corrupt_files: list[str] = field(default_factory=list)
    paused_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.corrupt_files


# ── Hashing ──────────────────────────────────────────────────────────────────


def sha256_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _split_into_chunks(file_path: Path, chunk_size: int, chunk_store: Path | None) -> list[ChunkInfo]:
    chunks = []
    with open(file_path, "rb") as f:
        for data in iter(lambda: f.read(chunk_size), b""):
            digest = hashlib.sha256(data).hexdigest()
            chunks.append(ChunkInfo(id=digest, sha256=digest, size=len(data)))
            if chunk_store is not None:
                target = Path(chunk_store) / digest
                if not target.exists():
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(data)
    return chunks


def verify_file(file_path: Path, *expected_hashes: str) -> int:
    """Return the 1-based index of the first hash that ``file_path`` matches, 0 if none."""
    if not Path(file_path).is_file():
        return 0
    try:
        actual = sha256_file(file_path)
    except OSError:
        return 0
    for index, expected in enumerate(expected_hashes, start=1):
        if expected and actual == expected:
            return index
    return 0


def _verify_entry(file_path: Path, entry: FileEntry) -> bool:
    try:
        if not file_path.is_file() or file_path.stat().st_size != entry.size:
            return False
    except OSError:
        return False
    return verify_file(file_path, entry.sha256) == 1


# ── Diffing ──────────────────────────────────────────────────────────────────


def is_file_outdated(current: BuildManifest, target: BuildManifest, filename: str) -> bool:
    """True when ``filename`` is new, removed or changed between the two builds."""
    if current is target:
        return False
    old = current.get_file(filename)
    new = target.get_file(filename)
    if old is None or new is None:
        return True
    return old.sha256 != new.sha256


def get_outdated_files(
    current: BuildManifest | None,
    target: BuildManifest,
    install_dir: Path,
) -> list[str]:
    """Files of ``target`` that must be constructed.

    Everything on a first install; otherwise files that are new or changed,
    plus unchanged files whose installed size no longer matches.
    """
    if current is None:
        return target.file_list()

    install_dir = Path(install_dir)
    outdated = []
    for filename in target.file_list():
        if is_file_outdated(current, target, filename):
            outdated.append(filename)
            continue
        expected = target.get_file(filename)
        installed = install_dir / filename
        try:
            if not installed.is_file() or installed.stat().st_size != expected.size:
                outdated.append(filename)
        except OSError:
            outdated.append(filename)
    return outdated


def get_removable_files(current: BuildManifest, target: BuildManifest) -> list[str]:
    """Files installed by ``current`` that ``target`` no longer contains."""
    return [f for f in current.file_list() if target.get_file(f) is None]
