"""Accumulated statistics for one installation run."""

from pydantic import BaseModel

from buildpatch.services.install.errors import InstallErrorType


class BuildStats(BaseModel):
    """Counters, timings and the final outcome of a run.

    The orchestrator owns the only mutable instance and guards it with its
    lock; callers always receive copies.
    """

    app_name: str = ""
    app_installed_version: str = "NONE"
    app_patch_version: str = ""
    cloud_directory: str = ""

    num_files_in_build: int = 0
    num_files_outdated: int = 0
    num_files_to_remove: int = 0

    num_chunks_required: int = 0
    chunks_queued_for_download: int = 0
    chunks_locally_available: int = 0
    num_chunks_downloaded: int = 0
    num_chunks_recycled: int = 0
    num_chunks_cache_booted: int = 0
    num_drive_cache_chunk_loads: int = 0
    num_recycle_failures: int = 0
    num_drive_cache_load_failures: int = 0

    total_downloaded_data: int = 0
    average_download_speed: float = 0.0  # bytes/sec
    theoretical_download_time: float = 0.0
    verify_time: float = 0.0
    clean_up_time: float = 0.0
    process_execute_time: float = 0.0
    process_paused_time: float = 0.0

    process_success: bool = False
    failure_reason: str = ""
    failure_type: InstallErrorType = InstallErrorType.NO_ERROR
    prereq_restart_required: bool = False
