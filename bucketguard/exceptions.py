"""Custom exceptions for the token bucket limiter.

Denials are not errors: a rejected request is reported as a zero balance.
These exceptions cover structural misconfiguration and shared-store failures.
"""


class LimiterError(Exception):
    """Base class for limiter exceptions.

    All custom exceptions inherit from this class so callers can catch
    every limiter failure with a single except clause.
    """

    def __init__(self, message: str = "Limiter error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(LimiterError):
    """Raised when a limiter is constructed with invalid parameters.

    Surfaced at construction time because it is structural, not transient.
    """

    def __init__(self, field: str | None = None, message: str = "Invalid limiter configuration"):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class SharedStoreUnavailableError(LimiterError):
    """Raised when the shared Redis store is not ready to serve the script.

    The distributed limiter handles this exactly like a script execution
    error: it falls back to the insurance limiter or fails open.
    """

    def __init__(self, status: str = "unavailable", detail: str | None = None):
        self.status = status
        message = f"Shared store not ready (status={status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
