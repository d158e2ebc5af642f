"""Filesystem-backed collaborators: serve chunks from a local chunk store.

A chunk store is a directory holding one file per chunk, named by chunk id,
as written by ``Manifest.from_directory(..., chunk_store=...)``.
"""

import hashlib
import shutil
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

import structlog

from buildpatch.services.install.errors import InstallErrorType
from buildpatch.services.install.interfaces import Collaborators, InstallContext
from buildpatch.services.install.manifest import sha256_file
from buildpatch.services.install.progress import ProgressState
from buildpatch.services.install.throughput import DownloadRecord

logger = structlog.get_logger()

COPY_BLOCK_SIZE = 65536
WAIT_POLL_INTERVAL = 0.1


class ChunkSource(Protocol):
    def acquire(self, chunk_id: str) -> Path | None: ...

    def release(self, chunk_id: str) -> None: ...


# ── Downloader ───────────────────────────────────────────────────────────────


class LocalChunkDownloader:
    """Copies chunks from the chunk store into data staging on a worker pool."""

    def __init__(self, ctx: InstallContext, chunk_store: Path, max_workers: int = 4):
        self._ctx = ctx
        self._store = Path(chunk_store)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="buildpatch-download")
        self._cond = threading.Condition()
        self._queued: set[str] = set()
        self._pending: set[str] = set()
        self._ready: set[str] = set()
        self._failed: set[str] = set()
        self._records: list[DownloadRecord] = []
        self._bytes_left = 0
        self._byte_count = 0
        self._started = False
        self._no_more_chunks = False
        self._cancelled = threading.Event()

    def add_chunks_to_download(self, chunk_ids) -> None:
        target = self._ctx.job.target_manifest
        to_submit = []
        with self._cond:
            for chunk_id in chunk_ids:
                if chunk_id in self._queued:
                    continue
                self._queued.add(chunk_id)
                self._pending.add(chunk_id)
                chunk = target.get_chunk(chunk_id)
                self._bytes_left += chunk.size if chunk is not None else 0
                to_submit.append(chunk_id)
        logger.debug("chunks_queued", count=len(to_submit))
        for chunk_id in to_submit:
            self._executor.submit(self._download, chunk_id)

    def notify_no_more_chunks_to_add(self) -> None:
        with self._cond:
            self._no_more_chunks = True
            self._cond.notify_all()

    def is_complete(self) -> bool:
        with self._cond:
            return self._no_more_chunks and not self._pending

    def have_downloads_started(self) -> bool:
        with self._cond:
            return self._started

    def get_num_bytes_left(self) -> int:
        with self._cond:
            return self._bytes_left

    def get_byte_download_count_reset(self) -> int:
        with self._cond:
            count = self._byte_count
            self._byte_count = 0
            return count

    def get_download_recordings(self) -> list[DownloadRecord]:
        with self._cond:
            return list(self._records)

    def cancel(self) -> None:
        self._cancelled.set()
        with self._cond:
            self._cond.notify_all()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def is_queued(self, chunk_id: str) -> bool:
        with self._cond:
            return chunk_id in self._queued

    def chunk_path(self, chunk_id: str) -> Path:
        return self._ctx.job.data_staging_dir / chunk_id

    def acquire(self, chunk_id: str) -> Path | None:
        """Block until ``chunk_id`` is staged. None if it failed or the attempt is over."""
        with self._cond:
            while True:
                if chunk_id in self._ready:
                    return self.chunk_path(chunk_id)
                if chunk_id in self._failed or self._cancelled.is_set():
                    return None
                if self._ctx.errors.has_fatal_error():
                    return None
                self._cond.wait(WAIT_POLL_INTERVAL)

    def release(self, chunk_id: str) -> None:
        """Staged file data is left in place until staging is cleaned up."""

    # ── Worker ───────────────────────────────────────────────────────────────

    def _download(self, chunk_id: str) -> None:
        ctx = self._ctx
        ctx.control.wait_while_paused()
        if self._cancelled.is_set() or ctx.errors.has_fatal_error():
            self._finish(chunk_id, ok=False)
            return

        with self._cond:
            self._started = True

        chunk = ctx.job.target_manifest.get_chunk(chunk_id)
        src = self._store / chunk_id
        dest = self.chunk_path(chunk_id)
        if chunk is None or not src.is_file():
            logger.error("chunk_missing", chunk_id=chunk_id, store=str(self._store))
            ctx.errors.set_fatal_error(InstallErrorType.DOWNLOAD_ERROR, f"Chunk {chunk_id} is not available.")
            self._finish(chunk_id, ok=False)
            return

        start_time = time.time()
        digest = hashlib.sha256()
        received = 0
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(src, "rb") as f_in, open(dest, "wb") as f_out:
                for block in iter(lambda: f_in.read(COPY_BLOCK_SIZE), b""):
                    if self._cancelled.is_set():
                        break
                    f_out.write(block)
                    digest.update(block)
                    received += len(block)
                    with self._cond:
                        self._byte_count += len(block)
        except OSError as e:
            logger.error("chunk_copy_failed", chunk_id=chunk_id, error=str(e))
            ctx.errors.set_fatal_error(InstallErrorType.DOWNLOAD_ERROR, f"Failed to fetch chunk {chunk_id}: {e}")
            self._finish(chunk_id, ok=False)
            return

        if self._cancelled.is_set():
            self._finish(chunk_id, ok=False)
            return
        if digest.hexdigest() != chunk.sha256:
            logger.error("chunk_hash_mismatch", chunk_id=chunk_id)
            ctx.errors.set_fatal_error(InstallErrorType.DOWNLOAD_ERROR, f"Chunk {chunk_id} failed its hash check.")
            self._finish(chunk_id, ok=False)
            return

        with self._cond:
            self._records.append(DownloadRecord(start_time, time.time(), received))
        self._finish(chunk_id, ok=True, size=chunk.size)

    def _finish(self, chunk_id: str, ok: bool, size: int = 0) -> None:
        with self._cond:
            self._pending.discard(chunk_id)
            if ok:
                self._ready.add(chunk_id)
                self._bytes_left = max(self._bytes_left - size, 0)
            else:
                self._failed.add(chunk_id)
            self._cond.notify_all()


# ── Chunk cache ──────────────────────────────────────────────────────────────


class LocalChunkCache:
    """Recycles chunks from registered installations, downloading the rest.

    Chunks still present (and intact) in an installed build are read out of
    the installed file at their offset. A chunk staged for construction is
    removed once the last file needing it has been built.
    """

    def __init__(self, ctx: InstallContext, downloader: LocalChunkDownloader, files: list[str]):
        self._ctx = ctx
        self._downloader = downloader
        target = ctx.job.target_manifest

        self._uses = Counter()
        for filename in files:
            entry = target.get_file(filename)
            if entry is not None:
                self._uses.update(entry.chunks)

        required = target.get_chunks_required_for_files(files)
        sources = self._index_installed_chunks()
        self._recycle_sources = {c: sources[c] for c in required if c in sources}
        to_download = [c for c in required if c not in self._recycle_sources]

        self.stat_num_files_to_construct = len(files)
        self.stat_num_required_chunks = len(required)
        self.stat_num_chunks_to_download = len(to_download)
        self.stat_num_chunks_to_recycle = len(self._recycle_sources)
        self.stat_total_chunk_download_size = target.get_data_size(to_download)

        self.counter_chunks_recycled = 0
        self.counter_chunks_cache_booted = 0
        self.counter_drive_cache_chunk_loads = 0
        self.counter_recycle_failures = 0
        self.counter_drive_cache_load_failures = 0

        logger.info(
            "chunk_cache_ready",
            required=len(required),
            to_recycle=len(self._recycle_sources),
            to_download=len(to_download),
        )
        downloader.add_chunks_to_download(to_download)

    def have_downloads_started(self) -> bool:
        return self._downloader.have_downloads_started()

    def shutdown(self) -> None:
        self._recycle_sources.clear()

    def acquire(self, chunk_id: str) -> Path | None:
        if self._downloader.is_queued(chunk_id):
            return self._downloader.acquire(chunk_id)

        staged = self._downloader.chunk_path(chunk_id)
        if staged.is_file():
            chunk = self._ctx.job.target_manifest.get_chunk(chunk_id)
            if chunk is not None and sha256_file(staged) == chunk.sha256:
                self.counter_drive_cache_chunk_loads += 1
                return staged
            staged.unlink()
            self.counter_drive_cache_load_failures += 1

        source = self._recycle_sources.pop(chunk_id, None)
        if source is not None:
            if self._recycle(chunk_id, source, staged):
                self.counter_chunks_recycled += 1
                return staged
            self.counter_recycle_failures += 1
            logger.warning("chunk_recycle_failed", chunk_id=chunk_id, source=str(source[0]))

        self._downloader.add_chunks_to_download([chunk_id])
        return self._downloader.acquire(chunk_id)

    def release(self, chunk_id: str) -> None:
        self._uses[chunk_id] -= 1
        if self._uses[chunk_id] <= 0:
            staged = self._downloader.chunk_path(chunk_id)
            if staged.exists():
                staged.unlink()
                self.counter_chunks_cache_booted += 1

    def _index_installed_chunks(self) -> dict[str, tuple[Path, int, int]]:
        """chunk id -> (installed file, offset, size) across registered installations."""
        index: dict[str, tuple[Path, int, int]] = {}
        for install_dir, manifest in self._ctx.registry.installations().items():
            for filename in manifest.file_list():
                entry = manifest.get_file(filename)
                offset = 0
                for chunk_id in entry.chunks:
                    chunk = manifest.get_chunk(chunk_id)
                    if chunk is None:
                        break
                    index.setdefault(chunk_id, (install_dir / filename, offset, chunk.size))
                    offset += chunk.size
        return index

    def _recycle(self, chunk_id: str, source: tuple[Path, int, int], dest: Path) -> bool:
        path, offset, size = source
        chunk = self._ctx.job.target_manifest.get_chunk(chunk_id)
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                data = f.read(size)
        except OSError:
            return False
        if chunk is None or len(data) != size or hashlib.sha256(data).hexdigest() != chunk.sha256:
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return True


# ── File constructor ─────────────────────────────────────────────────────────


class LocalFileConstructor:
    """Builds target files in install staging from chunks, on its own thread."""

    def __init__(self, ctx: InstallContext, files: list[str], source: ChunkSource):
        self._ctx = ctx
        self._files = list(files)
        self._source = source
        self._thread = threading.Thread(target=self._run, name="buildpatch-constructor", daemon=True)
        self.files_constructed: list[str] = []

    def start(self) -> "LocalFileConstructor":
        self._thread.start()
        return self

    def is_complete(self) -> bool:
        return not self._thread.is_alive()

    def wait(self) -> None:
        self._thread.join()

    def _run(self) -> None:
        ctx = self._ctx
        target = ctx.job.target_manifest
        entries = [target.get_file(f) for f in self._files]
        total_size = float(sum(e.size for e in entries if e is not None)) or 1.0
        constructed_size = 0

        for filename, entry in zip(self._files, entries):
            ctx.control.wait_while_paused()
            if ctx.errors.has_fatal_error():
                break
            if entry is None:
                ctx.errors.set_fatal_error(
                    InstallErrorType.FILE_CONSTRUCTION_FAIL, f"{filename} is not part of the build."
                )
                break
            if not self._construct(filename, entry):
                break
            self.files_constructed.append(filename)
            constructed_size += entry.size
            ctx.progress.set_state_progress(ProgressState.INSTALLING, constructed_size / total_size)

        logger.info("file_constructor_finished", constructed=len(self.files_constructed), requested=len(self._files))

    def _construct(self, filename: str, entry) -> bool:
        ctx = self._ctx
        dest = ctx.job.install_staging_dir / filename
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with open(dest, "wb") as out:
                for chunk_id in entry.chunks:
                    chunk_path = self._source.acquire(chunk_id)
                    if chunk_path is None:
                        # The downloader has already recorded why
                        ctx.errors.set_fatal_error(
                            InstallErrorType.FILE_CONSTRUCTION_FAIL,
                            f"Missing chunk {chunk_id} for {filename}.",
                        )
                        return False
                    with open(chunk_path, "rb") as f:
                        shutil.copyfileobj(f, out, COPY_BLOCK_SIZE)
                    self._source.release(chunk_id)
        except OSError as e:
            logger.error("file_construction_failed", file=filename, error=str(e))
            ctx.errors.set_fatal_error(InstallErrorType.FILE_CONSTRUCTION_FAIL, f"Failed to build {filename}: {e}")
            return False

        if sha256_file(dest) != entry.sha256:
            logger.error("constructed_file_hash_mismatch", file=filename)
            ctx.errors.set_fatal_error(
                InstallErrorType.FILE_CONSTRUCTION_FAIL, f"{filename} failed its hash check after construction."
            )
            return False
        return True


# ── Factory ──────────────────────────────────────────────────────────────────


class LocalCollaborators:
    """Creates fresh local collaborators for every installation attempt."""

    def __init__(self, chunk_store: Path, max_workers: int = 4):
        self._chunk_store = Path(chunk_store)
        self._max_workers = max_workers
        self._downloader: LocalChunkDownloader | None = None
        self._cache: LocalChunkCache | None = None

    def create_downloader(self, ctx: InstallContext) -> LocalChunkDownloader:
        self._downloader = LocalChunkDownloader(ctx, self._chunk_store, self._max_workers)
        self._cache = None
        return self._downloader

    def create_chunk_cache(
        self, ctx: InstallContext, downloader: LocalChunkDownloader, files: list[str],
    ) -> LocalChunkCache:
        self._cache = LocalChunkCache(ctx, downloader, files)
        return self._cache

    def create_file_constructor(self, ctx: InstallContext, files: list[str]) -> LocalFileConstructor:
        source = self._cache if self._cache is not None else self._downloader
        return LocalFileConstructor(ctx, files, source).start()

    def collaborators(self) -> Collaborators:
        return Collaborators(
            create_downloader=self.create_downloader,
            create_file_constructor=self.create_file_constructor,
            create_chunk_cache=self.create_chunk_cache,
        )
