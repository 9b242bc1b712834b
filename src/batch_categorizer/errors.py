from batch_categorizer.models import ErrorType


class RemoteError(Exception):
    """Failure of the remote classification or summarization capability."""

    error_type: ErrorType = "api_error"
    retryable = False


class NotConfiguredError(RemoteError):
    error_type: ErrorType = "api_not_configured"


class RateLimitedError(RemoteError):
    error_type: ErrorType = "rate_limit"

    def __init__(self, message: str = "Remote API rate limited", *, quota_exceeded: bool = False):
        super().__init__(message)
        self.quota_exceeded = quota_exceeded


class RemoteTimeoutError(RemoteError):
    error_type: ErrorType = "timeout"
    retryable = True


class RemoteConnectionError(RemoteError):
    error_type: ErrorType = "connection"
    retryable = True


class ResponseParseError(RemoteError):
    error_type: ErrorType = "parse_error"


class RemoteAPIError(RemoteError):
    error_type: ErrorType = "api_error"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = status_code is not None and status_code >= 500
