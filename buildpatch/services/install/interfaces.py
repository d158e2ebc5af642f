"""Contracts for the collaborators the installer drives.

The orchestrator never constructs downloaders, chunk caches or file
constructors itself; it asks a ``Collaborators`` factory for fresh ones on
every attempt and talks to them only through the protocols below.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from buildpatch.config import Settings
    from buildpatch.services.install.control import ControlState
    from buildpatch.services.install.errors import InstallErrorState
    from buildpatch.services.install.job import InstallationJob
    from buildpatch.services.install.manifest import ChunkInfo, FileEntry
    from buildpatch.services.install.progress import ProgressTracker
    from buildpatch.services.install.registry import InstallationRegistry
    from buildpatch.services.install.throughput import DownloadRecord


class BuildManifest(Protocol):
    app_name: str
    version: str
    is_file_data: bool
    prereq_path: str
    prereq_args: str

    @property
    def num_files(self) -> int: ...

    def file_list(self) -> list[str]: ...

    def get_file(self, filename: str) -> "FileEntry | None": ...

    def get_chunk(self, chunk_id: str) -> "ChunkInfo | None": ...

    def is_same_as(self, other: "BuildManifest") -> bool: ...

    def get_chunks_required_for_files(self, filenames: Sequence[str]) -> list[str]: ...

    def get_data_size(self, chunk_ids: Sequence[str]) -> int: ...

    def verify_against_directory(
        self,
        install_dir: Path,
        progress: Callable[[float], None] | None = None,
        pause_check: Callable[[], bool] | None = None,
        should_abort: Callable[[], bool] | None = None,
    ): ...


class Downloader(Protocol):
    def add_chunks_to_download(self, chunk_ids: Sequence[str]) -> None: ...

    def notify_no_more_chunks_to_add(self) -> None: ...

    def is_complete(self) -> bool: ...

    def have_downloads_started(self) -> bool: ...

    def get_num_bytes_left(self) -> int: ...

    def get_byte_download_count_reset(self) -> int: ...

    def get_download_recordings(self) -> list["DownloadRecord"]: ...

    def cancel(self) -> None: ...

    def shutdown(self) -> None: ...


class ChunkCache(Protocol):
    stat_num_files_to_construct: int
    stat_num_required_chunks: int
    stat_num_chunks_to_download: int
    stat_num_chunks_to_recycle: int
    stat_total_chunk_download_size: int

    counter_chunks_recycled: int
    counter_chunks_cache_booted: int
    counter_drive_cache_chunk_loads: int
    counter_recycle_failures: int
    counter_drive_cache_load_failures: int

    def have_downloads_started(self) -> bool: ...

    def shutdown(self) -> None: ...


class FileConstructor(Protocol):
    def is_complete(self) -> bool: ...

    def wait(self) -> None: ...


@dataclass
class InstallContext:
    """Everything a collaborator needs to take part in one attempt."""

    job: "InstallationJob"
    progress: "ProgressTracker"
    errors: "InstallErrorState"
    control: "ControlState"
    registry: "InstallationRegistry"
    settings: "Settings"


@dataclass
class Collaborators:
    """Factories for per-attempt collaborators.

    ``create_chunk_cache`` is only consulted for chunk-data manifests; it
    receives the attempt's downloader so it can queue the chunks it cannot
    recycle.
    """

    create_downloader: Callable[[InstallContext], Downloader]
    create_file_constructor: Callable[[InstallContext, list[str]], FileConstructor]
    create_chunk_cache: Callable[[InstallContext, Downloader, list[str]], ChunkCache] | None = None
