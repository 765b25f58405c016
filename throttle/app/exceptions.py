"""Custom exceptions for the throttling service."""


class ThrottleException(Exception):
    """Base class for throttling exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their specific
    status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Throttling error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(ThrottleException):
    """Raised when a rate limit policy is invalid.

    Detected while policies are built or registered, so it only ever fails
    application setup, never a request.
    """
    status_code = 500

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class StoreUnavailableError(ThrottleException):
    """Describes a failed call to a counter state store.

    Stores hand this back inside a StoreResult instead of raising it; the
    tiered store recovers by falling back to the local map.
    """
    status_code = 503

    def __init__(self, store: str, operation: str, reason: str = "unavailable"):
        self.store = store
        self.operation = operation
        self.reason = reason
        super().__init__(f"{store} store {operation} failed: {reason}")
