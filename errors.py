class ServiceError(Exception):
    """Base class for errors surfaced to the caller as ``{"message": ...}``."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ServiceError):
    """Raised when a field is missing, malformed or out of range."""

    status_code = 400


class NotFound(ServiceError):
    """Raised when an account or withdrawal request does not exist."""

    status_code = 404


class Unauthorized(ServiceError):
    """Raised when credentials or a session token do not match."""

    status_code = 401


class Conflict(ServiceError):
    """Raised on duplicate accounts and already-approved requests."""

    status_code = 400


class StorageError(Exception):
    """Raised when a document store cannot be read or written."""
