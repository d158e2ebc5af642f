"""Installation orchestrator: retrying install/move/verify state machine on a worker thread."""

import enum
import threading
import time
from collections.abc import Callable

import structlog

from buildpatch.config import Settings, settings as default_settings
from buildpatch.core.exceptions import InstallInProgressError
from buildpatch.services.install.attributes import FileAttributeApplier
from buildpatch.services.install.backup import BackupRelocationManager
from buildpatch.services.install.control import ControlState
from buildpatch.services.install.errors import InstallErrorState, InstallErrorType
from buildpatch.services.install.interfaces import (
    BuildManifest,
    ChunkCache,
    Collaborators,
    Downloader,
    InstallContext,
)
from buildpatch.services.install.job import InstallationJob
from buildpatch.services.install.locks import exclusive_section
from buildpatch.services.install.manifest import get_outdated_files
from buildpatch.services.install.prerequisites import PrerequisiteRunner
from buildpatch.services.install.progress import ProgressState, ProgressTracker
from buildpatch.services.install.registry import InstallationRegistry
from buildpatch.services.install.stats import BuildStats
from buildpatch.services.install.throughput import DownloadSpeedSampler, summarize_downloads
from buildpatch.services.install.verification import VerificationEngine

logger = structlog.get_logger()

CompletionCallback = Callable[[bool, BuildManifest], None]

# A verify weight of 1/9 of the rest makes it ~10% of the total
VERIFY_WEIGHT = 1.1 / 9.0


class InstallPhase(str, enum.Enum):
    INITIALIZING = "initializing"
    INSTALLING = "installing"
    BACKING_UP = "backing_up"
    SETTING_ATTRIBUTES = "setting_attributes"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    PREREQ_INSTALL = "prereq_install"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InstallationOrchestrator:
    """Drives one installation job to an all-or-nothing outcome.

    ``start()`` runs the job on a background thread. Every status method is
    safe to call from other threads while it runs; they only take the lock
    for short reads. The completion callback is never called from the worker:
    the caller invokes ``dispatch_completion()`` from its own thread once
    ``is_complete()`` is true, and the callback fires exactly once.
    """

    def __init__(
        self,
        job: InstallationJob,
        collaborators: Collaborators,
        on_complete: CompletionCallback | None = None,
        registry: InstallationRegistry | None = None,
        settings: Settings | None = None,
    ):
        self._job = job
        self._collaborators = collaborators
        self._on_complete = on_complete
        self._registry = registry or InstallationRegistry()
        self._settings = settings or default_settings

        self._lock = threading.Lock()
        self._stats = BuildStats()
        self._phase = InstallPhase.INITIALIZING
        self._started = False
        self._running = False
        self._inited = False
        self._success = False
        self._completion_dispatched = False
        self._finished = threading.Event()
        self._thread: threading.Thread | None = None

        self._download_speed = -1.0
        self._download_bytes_left = 0
        self._initial_download_size = 0
        self._paused_at = 0.0
        self._active_downloader: Downloader | None = None
        self._speed_sampler = DownloadSpeedSampler()

        self._errors = InstallErrorState()
        self._control = ControlState()
        self._progress = ProgressTracker()
        self._backup = BackupRelocationManager(
            job, self._errors, self._progress, settings=self._settings, on_stats=self._update_stats,
        )
        self._attributes = FileAttributeApplier(job, self._errors)
        self._verifier = VerificationEngine(job, self._errors, self._control, self._progress, self._backup)
        self._prereqs = PrerequisiteRunner(job, self._errors, self._progress, settings=self._settings)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> "InstallationOrchestrator":
        """Begin the job on a background thread. May only be called once."""
        with self._lock:
            if self._started:
                raise InstallInProgressError(
                    message="This installer has already been started.",
                    details={"install_dir": str(self._job.install_directory)},
                )
            self._started = True

        self._job.install_directory.mkdir(parents=True, exist_ok=True)
        self._thread = threading.Thread(
            target=self._thread_main,
            name="buildpatch-installer",
            daemon=True,
        )
        self._thread.start()
        return self

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker finishes. Returns False on timeout."""
        return self._finished.wait(timeout)

    def dispatch_completion(self) -> bool:
        """Invoke the completion callback on the calling thread, once.

        Returns True if the callback was invoked by this call.
        """
        with self._lock:
            if not self._finished.is_set() or self._completion_dispatched:
                return False
            self._completion_dispatched = True
            success = self._success
        if self._on_complete is not None:
            self._on_complete(success, self._job.target_manifest)
        return True

    def _thread_main(self) -> None:
        try:
            self.run()
        except Exception:
            logger.exception("installer_thread_crashed", install_dir=str(self._job.install_directory))
            self._errors.set_fatal_error(InstallErrorType.INITIALIZATION_ERROR, "Installer crashed unexpectedly.")
            with self._lock:
                self._success = False
                self._stats.process_success = False
                self._stats.failure_reason = self._errors.error_string()
                self._stats.failure_type = self._errors.error_type
                self._running = False
                self._phase = InstallPhase.FAILED
        finally:
            self._finished.set()

    # ── State machine ────────────────────────────────────────────────────────

    def run(self) -> bool:
        """Execute the whole job on the current thread. Returns overall success."""
        self._errors.reset()
        self._reapply_cancel()
        with self._lock:
            self._running = True
            self._inited = True
            self._download_speed = -1.0
        self._speed_sampler.reset()
        self._job.install_directory.mkdir(parents=True, exist_ok=True)

        if self._job.current_manifest is not None:
            self._registry.register(self._job.current_manifest, self._job.install_directory)

        install_prereqs = self._job.is_first_install and bool(self._job.target_manifest.prereq_path)
        is_repair = self._job.is_repair
        start_time = time.monotonic()
        clean_up_time = 0.0

        corrupt_files: list[str] = []
        process_success = False
        can_retry = True
        retries = self._settings.buildpatch_install_retries
        attempt = 0

        while not process_success and can_retry:
            attempt += 1
            logger.info("install_attempt_starting", attempt=attempt, required_files=len(corrupt_files))

            self._set_phase(InstallPhase.INSTALLING)
            install_success = self._run_installation(corrupt_files)
            self._progress.set_state_progress(
                ProgressState.PREREQUISITES_INSTALL, 0.0 if install_prereqs else 1.0
            )
            if install_success:
                self._progress.set_state_progress(ProgressState.DOWNLOADING, 1.0)
                self._progress.set_state_progress(ProgressState.INSTALLING, 1.0)

            if install_success:
                self._set_phase(InstallPhase.BACKING_UP)
                install_success = self._run_phase(
                    self._backup.run_backup_and_move, InstallErrorType.MOVE_FILE_TO_INSTALL,
                )
            if install_success:
                self._set_phase(InstallPhase.SETTING_ATTRIBUTES)
                install_success = self._run_phase(
                    lambda: self._attributes.run(force=is_repair), InstallErrorType.NO_ERROR,
                )

            # Always verify so the next attempt gets the fullest corrupt-file list
            self._set_phase(InstallPhase.VERIFYING)
            self._progress.set_state_progress(ProgressState.INITIALIZING, 1.0)
            verification = self._verifier.verify()
            corrupt_files = verification.corrupt_files
            with self._lock:
                self._stats.verify_time = verification.elapsed_seconds
            process_success = install_success and verification.success

            if install_success:
                logger.info("staging_cleanup", staging_dir=str(self._job.staging_directory))
                cleanup_started = time.monotonic()
                self._job.cleanup_staging()
                clean_up_time = time.monotonic() - cleanup_started
            self._progress.set_state_progress(ProgressState.CLEAN_UP, 1.0)

            retries -= 1
            can_retry = retries > 0 and not self.is_cancelled() and not self._errors.is_no_retry()

            if process_success or can_retry:
                self._job.clear_resume_marker()
            if not process_success and can_retry:
                self._set_phase(InstallPhase.RETRYING)
                logger.warning(
                    "install_attempt_failed_retrying",
                    attempt=attempt,
                    retries_left=retries,
                    reason=self._errors.error_string(),
                    corrupt_files=len(corrupt_files),
                )

        if process_success and install_prereqs:
            self._set_phase(InstallPhase.PREREQ_INSTALL)
            process_success = self._run_phase(self._prereqs.run, InstallErrorType.PREREQUISITE_ERROR)

        with self._lock:
            self._success = process_success
            self._stats.process_success = process_success
            self._stats.process_execute_time = (time.monotonic() - start_time) - self._stats.process_paused_time
            self._stats.failure_reason = self._errors.error_string()
            self._stats.failure_type = self._errors.error_type
            self._stats.clean_up_time = clean_up_time
            self._stats.prereq_restart_required = self._prereqs.restart_required
            self._phase = InstallPhase.SUCCEEDED if process_success else InstallPhase.FAILED
            final_stats = self._stats.model_copy()

        logger.info("build_stats", attempts=attempt, **final_stats.model_dump(mode="json"))

        with self._lock:
            self._running = False
        return process_success

    def _run_installation(self, corrupt_files: list[str]) -> bool:
        with exclusive_section("installation", self._job.install_directory):
            return self._run_phase(
                lambda: self._install(corrupt_files), InstallErrorType.FILE_CONSTRUCTION_FAIL,
            )

    def _install(self, corrupt_files: list[str]) -> bool:
        """Download and construct everything the target build needs into staging."""
        job = self._job
        target = job.target_manifest
        current = job.current_manifest
        logger.info("installation_starting", install_dir=str(job.install_directory))

        job.init_directories()
        self._errors.reset()
        self._reapply_cancel()
        self._progress.reset()
        self._progress.set_state_progress(ProgressState.INITIALIZING, 0.01)
        self._progress.set_state_progress(ProgressState.CLEAN_UP, 0.0)

        if job.has_resume_marker():
            logger.info("previous_staging_completed", marker=str(job.resume_marker))
            self._progress.set_state_weight(ProgressState.DOWNLOADING, 0.0)
            self._progress.set_state_weight(ProgressState.INSTALLING, 0.0)
            self._progress.set_state_weight(ProgressState.MOVING_TO_INSTALL, 0.0)
            self._progress.set_state_weight(ProgressState.BUILD_VERIFICATION, 1.0)
            for state in [
                ProgressState.INITIALIZING,
                ProgressState.RESUMING,
                ProgressState.DOWNLOADING,
                ProgressState.INSTALLING,
                ProgressState.MOVING_TO_INSTALL,
            ]:
                self._progress.set_state_progress(state, 1.0)
            return True
        self._progress.set_state_progress(ProgressState.RESUMING, 1.0)

        if corrupt_files:
            files_to_construct = list(corrupt_files)
        else:
            files_to_construct = get_outdated_files(current, target, job.install_directory)
        logger.info("files_required", count=len(files_to_construct))

        ctx = InstallContext(
            job=job,
            progress=self._progress,
            errors=self._errors,
            control=self._control,
            registry=self._registry,
            settings=self._settings,
        )
        downloader = self._collaborators.create_downloader(ctx)
        with self._lock:
            self._active_downloader = downloader
        chunk_cache: ChunkCache | None = None

        try:
            if self._control.is_cancelling:
                downloader.cancel()

            if target.is_file_data:
                required_chunks = target.get_chunks_required_for_files(files_to_construct)
                num_files_to_construct = len(files_to_construct)
                num_required_chunks = len(required_chunks)
                num_chunks_to_download = len(required_chunks)
                num_chunks_to_recycle = 0
            else:
                if self._collaborators.create_chunk_cache is None:
                    raise RuntimeError("Chunk-data manifests need a chunk cache factory.")
                required_chunks = []
                chunk_cache = self._collaborators.create_chunk_cache(ctx, downloader, files_to_construct)
                num_files_to_construct = chunk_cache.stat_num_files_to_construct
                num_required_chunks = chunk_cache.stat_num_required_chunks
                num_chunks_to_download = chunk_cache.stat_num_chunks_to_download
                num_chunks_to_recycle = chunk_cache.stat_num_chunks_to_recycle

            self._update_stats(
                app_name=target.app_name,
                app_patch_version=target.version,
                app_installed_version=current.version if current is not None else "NONE",
                cloud_directory=self._settings.buildpatch_cloud_directory,
                num_files_in_build=target.num_files,
                num_files_outdated=num_files_to_construct,
                num_chunks_required=num_required_chunks,
                chunks_queued_for_download=num_chunks_to_download,
                chunks_locally_available=num_chunks_to_recycle,
            )

            required = float(num_required_chunks)
            self._progress.set_state_weight(
                ProgressState.DOWNLOADING, num_chunks_to_download / required if required > 0 else 0.0,
            )
            self._progress.set_state_weight(
                ProgressState.INSTALLING, 0.1 + num_chunks_to_recycle / required if required > 0 else 0.0,
            )
            self._progress.set_state_weight(
                ProgressState.MOVING_TO_INSTALL, 0.05 if num_files_to_construct > 0 else 0.0,
            )
            self._progress.set_state_weight(ProgressState.BUILD_VERIFICATION, VERIFY_WEIGHT)

            if job.is_repair:
                logger.info("performing_repair")
                self._progress.set_state_progress(ProgressState.DOWNLOADING, 1.0)
                self._progress.set_state_progress(ProgressState.INSTALLING, 1.0)
                self._progress.set_state_progress(ProgressState.MOVING_TO_INSTALL, 1.0)

            logger.info("file_construction_starting", files=len(files_to_construct))
            constructor = self._collaborators.create_file_constructor(ctx, files_to_construct)
            self._progress.set_state_progress(
                ProgressState.INITIALIZING, 1.0 if num_files_to_construct > 0 else 0.0,
            )

            if target.is_file_data:
                downloader.add_chunks_to_download(required_chunks)
                initial_download_size = target.get_data_size(required_chunks)
            else:
                initial_download_size = chunk_cache.stat_total_chunk_download_size
            with self._lock:
                self._initial_download_size = initial_download_size

            poll_interval = self._settings.buildpatch_poll_interval
            while not constructor.is_complete():
                self._update_download_progress(downloader, chunk_cache)
                time.sleep(poll_interval)
            constructor.wait()
            logger.info("file_construction_complete")

            downloader.notify_no_more_chunks_to_add()
            while not downloader.is_complete():
                self._update_download_progress(downloader, chunk_cache)
                time.sleep(poll_interval)

            records = downloader.get_download_recordings()
            with self._lock:
                self._download_speed = -1.0
            summary = summarize_downloads(records)

            self._update_stats(
                total_downloaded_data=summary.total_bytes,
                num_chunks_downloaded=len(records),
                average_download_speed=summary.average_speed,
                theoretical_download_time=summary.total_seconds,
                num_chunks_recycled=chunk_cache.counter_chunks_recycled if chunk_cache else 0,
                num_chunks_cache_booted=chunk_cache.counter_chunks_cache_booted if chunk_cache else 0,
                num_drive_cache_chunk_loads=chunk_cache.counter_drive_cache_chunk_loads if chunk_cache else 0,
                num_recycle_failures=chunk_cache.counter_recycle_failures if chunk_cache else 0,
                num_drive_cache_load_failures=chunk_cache.counter_drive_cache_load_failures if chunk_cache else 0,
            )
        finally:
            if chunk_cache is not None:
                chunk_cache.shutdown()
            downloader.shutdown()
            with self._lock:
                self._active_downloader = None

        logger.info("staged_install_complete", fatal_error=self._errors.error_string())
        return not self._errors.has_fatal_error()

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _run_phase(self, phase_fn: Callable[[], bool], error_type: InstallErrorType) -> bool:
        """Run a phase body, turning unexpected exceptions into a fatal error."""
        try:
            return phase_fn()
        except Exception as e:
            logger.exception("install_phase_error", phase=self.phase.value)
            if error_type is not InstallErrorType.NO_ERROR:
                self._errors.set_fatal_error(error_type, f"Phase '{self.phase.value}' failed: {e}")
            return error_type is InstallErrorType.NO_ERROR

    def _update_download_progress(self, downloader: Downloader, chunk_cache: ChunkCache | None) -> None:
        started = chunk_cache.have_downloads_started() if chunk_cache is not None else downloader.have_downloads_started()
        if not started:
            return
        bytes_left = downloader.get_num_bytes_left()
        with self._lock:
            initial = self._initial_download_size
        download_progress = 1.0 - (bytes_left / initial if initial > 0 else 0.0)
        self._progress.set_state_progress(ProgressState.DOWNLOADING, download_progress)
        speed = self._speed_sampler.update(downloader.get_byte_download_count_reset)
        with self._lock:
            self._download_speed = speed if download_progress < 1.0 else -1.0
            self._download_bytes_left = bytes_left

    def _update_stats(self, **kwargs) -> None:
        with self._lock:
            for key, value in kwargs.items():
                if hasattr(self._stats, key):
                    setattr(self._stats, key, value)

    def _set_phase(self, phase: InstallPhase) -> None:
        with self._lock:
            self._phase = phase
        logger.debug("install_phase", phase=phase.value)

    def _reapply_cancel(self) -> None:
        """A cancel request outlives error resets between attempts."""
        if self._control.is_cancelling:
            self._errors.set_fatal_error(InstallErrorType.USER_CANCELED)

    # ── Status / control (any thread) ────────────────────────────────────────

    @property
    def job(self) -> InstallationJob:
        return self._job

    @property
    def phase(self) -> InstallPhase:
        with self._lock:
            return self._phase

    @property
    def files_installed(self) -> set[str]:
        return set(self._backup.files_installed)

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def is_complete(self) -> bool:
        with self._lock:
            return not self._running and self._inited

    def is_cancelled(self) -> bool:
        """True once a cancel was requested, even if another error was recorded first."""
        return self._control.is_cancelling or self._errors.is_cancelled()

    def is_paused(self) -> bool:
        return self._control.is_paused

    def has_error(self) -> bool:
        """True when the job has failed for a reason other than cancellation.

        While the worker runs this reports whether the current attempt has
        recorded a fatal error; once finished it reports the overall outcome.
        """
        if self.is_cancelled():
            return False
        with self._lock:
            if self._stats.failure_type is InstallErrorType.USER_CANCELED:
                return False
            if self._running:
                return self._errors.has_fatal_error()
            return self._inited and not self._stats.process_success

    def cancel(self) -> None:
        logger.info("install_cancel_requested", install_dir=str(self._job.install_directory))
        if self._control.is_paused:
            self._account_pause_end()
        self._control.cancel()
        self._errors.set_fatal_error(InstallErrorType.USER_CANCELED)
        with self._lock:
            downloader = self._active_downloader
        if downloader is not None:
            downloader.cancel()

    def toggle_pause(self) -> bool:
        """Pause or resume. Returns the new paused state."""
        if self._control.is_paused:
            self._account_pause_end()
            self._control.resume()
            logger.info("install_resumed")
            return False
        if self._errors.has_fatal_error():
            return False
        with self._lock:
            self._paused_at = time.monotonic()
        paused = self._control.pause()
        if paused:
            logger.info("install_paused")
        return paused

    def _account_pause_end(self) -> None:
        with self._lock:
            self._stats.process_paused_time += time.monotonic() - self._paused_at

    def get_progress(self) -> float:
        return self._progress.get_progress()

    def get_status_text(self) -> str:
        return self._progress.state_text

    def get_stats(self) -> BuildStats:
        with self._lock:
            return self._stats.model_copy()

    def get_error_text(self) -> str:
        with self._lock:
            return self._stats.failure_reason

    def get_download_speed(self) -> float:
        """Current bytes/sec, or -1 when not downloading."""
        with self._lock:
            return self._download_speed

    def get_download_bytes_left(self) -> int:
        with self._lock:
            return self._download_bytes_left

    def get_initial_download_size(self) -> int:
        with self._lock:
            return self._initial_download_size

    def get_total_downloaded(self) -> int:
        with self._lock:
            return self._initial_download_size - self._download_bytes_left


def start_installation(
    job: InstallationJob,
    collaborators: Collaborators,
    on_complete: CompletionCallback | None = None,
    registry: InstallationRegistry | None = None,
    settings: Settings | None = None,
) -> InstallationOrchestrator:
    """Create an orchestrator for ``job`` and start it in the background."""
    orchestrator = InstallationOrchestrator(
        job,
        collaborators,
        on_complete=on_complete,
        registry=registry,
        settings=settings,
    )
    return orchestrator.start()
