"""Error taxonomy shared by the API, the queue worker and the streaming engine.

Each error carries the HTTP status it maps to, a stable machine-readable code
and whether the queue may schedule another attempt after it.
"""

from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "message": self.message}


class RequestValidationFailed(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


class UnsupportedPlatformError(AppError):
    status_code = 400
    code = "UNSUPPORTED_PLATFORM"

    def __init__(self, message: str = "Invalid URL or unsupported platform") -> None:
        super().__init__(message)


class DownloadabilityError(AppError):
    status_code = 422
    code = "DOWNLOAD_ERROR"
    retryable = True


class PlatformBlockedError(DownloadabilityError):
    code = "PLATFORM_BLOCKED"


class SizeLimitError(AppError):
    status_code = 422
    code = "FILE_TOO_LARGE"

    def __init__(self, estimated_mb: float, max_mb: float) -> None:
        super().__init__(f"File too large: {estimated_mb:.2f}MB exceeds limit of {max_mb:g}MB")
        self.estimated_mb = estimated_mb
        self.max_mb = max_mb


class ExternalToolError(AppError):
    status_code = 502
    code = "EXTERNAL_TOOL_ERROR"
    retryable = True


class ToolTimeoutError(ExternalToolError):
    status_code = 504
    code = "TOOL_TIMEOUT"


class FetchCancelledError(AppError):
    status_code = 499
    code = "CANCELLED"

    def __init__(self, message: str = "Download cancelled") -> None:
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions count as transient; typed errors decide for themselves."""
    if isinstance(exc, AppError):
        return exc.retryable
    return True
