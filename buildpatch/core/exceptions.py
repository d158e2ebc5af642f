class PatchError(Exception):
    """Base exception for installer API misuse and setup failures."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class ManifestError(PatchError):
    def __init__(self, message: str = "Build manifest is invalid.", details: dict | None = None):
        super().__init__(code="invalid_manifest", message=message, details=details)


class InstallInProgressError(PatchError):
    def __init__(self, message: str = "An installation is already in progress.", details: dict | None = None):
        super().__init__(code="install_in_progress", message=message, details=details)
