"""Custom application exceptions.

Every error carries an HTTP status for the synchronous API path and a
``retryable`` flag read by the job queue when the error escapes a handler.
"""


class AppException(Exception):
    """Base application exception."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InvalidTransition(ConflictException):
    """Lifecycle transition not permitted from the appointment's current status."""

    def __init__(self, action: str, current_status: str):
        """Initialize with the rejected action and the status it was attempted from."""
        self.action = action
        self.current_status = current_status
        super().__init__(f"Cannot {action} an appointment in status '{current_status}'")


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class TransientStoreError(AppException):
    """Read, write or timeout failure against the data store."""

    retryable = True

    def __init__(self, message: str = "Data store unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class LockContentionTimeout(AppException):
    """Per-key serialization lock could not be acquired in time."""

    retryable = True

    def __init__(self, key: str, timeout: float):
        """Initialize with the contended key and the bound that expired."""
        self.key = key
        super().__init__(f"Timed out after {timeout:g}s waiting for lock '{key}'", status_code=503)


class DeliveryError(AppException):
    """Notification channel failure."""

    retryable = True

    def __init__(self, message: str = "Notification delivery failed"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)
