"""Custom exceptions for the memwatch package."""


class WatcherError(Exception):
    """Base exception for all memwatch errors."""
    pass


class WatchSetupError(WatcherError):
    """A watched directory could not be subscribed to."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class InvalidEventError(WatcherError):
    """A file event is missing or structurally invalid."""
    pass


class InvalidMessageError(WatcherError):
    """A dispatch message is missing required fields."""
    pass


class SourceMissingError(WatcherError):
    """The file behind an upsert no longer exists at dispatch time."""

    def __init__(self, message: str, path: str = None):
        super().__init__(message)
        self.path = path


class DeliveryError(WatcherError):
    """The memory service could not be reached or rejected a request."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(DeliveryError):
    """The circuit breaker is open and requests are failing fast."""

    def __init__(self, message: str, retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after


class ConfigurationError(WatcherError):
    """Configuration is missing or invalid."""

    def __init__(self, message: str, errors: list = None):
        super().__init__(message)
        self.errors = list(errors or [])


class WatcherAlreadyRunningError(WatcherError):
    """Component is already running."""
    pass
