"""Fatal error record for a single installation attempt."""

import enum
import threading

import structlog

logger = structlog.get_logger()


class InstallErrorType(str, enum.Enum):
    NO_ERROR = "NO_ERROR"
    DOWNLOAD_ERROR = "DL"
    FILE_CONSTRUCTION_FAIL = "FC"
    MOVE_FILE_TO_INSTALL = "MF"
    BUILD_VERIFY_FAIL = "BV"
    APPLICATION_CLOSING = "AC"
    USER_CANCELED = "UC"
    PREREQUISITE_ERROR = "PQ"
    INITIALIZATION_ERROR = "II"
    PATH_LENGTH_EXCEEDED = "PL"
    OUT_OF_DISK_SPACE = "DS"


DEFAULT_ERROR_TEXT = {
    InstallErrorType.NO_ERROR: "",
    InstallErrorType.DOWNLOAD_ERROR: "The installation failed while downloading data.",
    InstallErrorType.FILE_CONSTRUCTION_FAIL: "The installation failed while constructing files.",
    InstallErrorType.MOVE_FILE_TO_INSTALL: "The installation failed while moving files into place.",
    InstallErrorType.BUILD_VERIFY_FAIL: "The installed build failed verification.",
    InstallErrorType.APPLICATION_CLOSING: "The application is closing.",
    InstallErrorType.USER_CANCELED: "The installation was cancelled.",
    InstallErrorType.PREREQUISITE_ERROR: "The prerequisites installer failed.",
    InstallErrorType.INITIALIZATION_ERROR: "The installation could not be initialized.",
    InstallErrorType.PATH_LENGTH_EXCEEDED: "An install path exceeds the platform path length limit.",
    InstallErrorType.OUT_OF_DISK_SPACE: "There is not enough disk space to complete the installation.",
}

NO_RETRY_ERRORS = frozenset({
    InstallErrorType.INITIALIZATION_ERROR,
    InstallErrorType.PATH_LENGTH_EXCEEDED,
    InstallErrorType.OUT_OF_DISK_SPACE,
})


class InstallErrorState:
    """First-write-wins record of the fatal error for the current attempt.

    Owned by one orchestrator and handed to the phases and collaborators it
    drives, so separate installer instances never share error state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._type = InstallErrorType.NO_ERROR
        self._message = ""

    def set_fatal_error(self, error_type: InstallErrorType, message: str = "") -> bool:
        """Record a fatal error. Returns False if one was already recorded."""
        with self._lock:
            if self._type is not InstallErrorType.NO_ERROR:
                logger.debug(
                    "install_error_ignored",
                    error_type=error_type.value,
                    existing=self._type.value,
                )
                return False
            self._type = error_type
            self._message = message or DEFAULT_ERROR_TEXT[error_type]
        logger.error("install_fatal_error", error_type=error_type.value, message=self._message)
        return True

    def reset(self) -> None:
        with self._lock:
            self._type = InstallErrorType.NO_ERROR
            self._message = ""

    @property
    def error_type(self) -> InstallErrorType:
        with self._lock:
            return self._type

    @property
    def message(self) -> str:
        with self._lock:
            return self._message

    def has_fatal_error(self) -> bool:
        return self.error_type is not InstallErrorType.NO_ERROR

    def is_cancelled(self) -> bool:
        return self.error_type is InstallErrorType.USER_CANCELED

    def is_no_retry(self) -> bool:
        return self.error_type in NO_RETRY_ERRORS

    def error_string(self) -> str:
        """Failure string in the form ``"<CODE>: <message>"``; empty when no error."""
        with self._lock:
            if self._type is InstallErrorType.NO_ERROR:
                return ""
            return f"{self._type.value}: {self._message}"
