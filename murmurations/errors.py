"""Custom exception classes for the application."""


class AppError(Exception):
    """Base application error class."""

    def __init__(self, message, status_code=400):
        """Initialize the error."""
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ValidationError(AppError):
    """Raised when user input fails validation."""

    def __init__(self, message="Validation failed."):
        """Initialize the error."""
        super().__init__(message, 400)


class AuthorizationError(AppError):
    """Raised when a member's role does not permit the action."""

    def __init__(self, message="You are not allowed to do that."):
        """Initialize the error."""
        super().__init__(message, 403)


class ConflictError(AppError):
    """Raised when the action clashes with the current state."""

    def __init__(self, message="Resource already exists."):
        """Initialize the error."""
        super().__init__(message, 409)


class NotFoundError(AppError):
    """Raised when a resource is not found."""

    def __init__(self, message="Resource not found."):
        """Initialize the error."""
        super().__init__(message, 404)


class InsufficientFunds(AppError):
    """Raised when a player's balance is below the required cost."""

    def __init__(self, message="Not enough coins."):
        """Initialize the error."""
        super().__init__(message, 402)


class CapacityExceeded(AppError):
    """Raised when a murmuration has no free member slots."""

    def __init__(self, message="This murmuration is full."):
        """Initialize the error."""
        super().__init__(message, 409)


class Expired(AppError):
    """Raised when an invite or challenge is past its window."""

    def __init__(self, message="This has expired."):
        """Initialize the error."""
        super().__init__(message, 410)


class PersistenceError(AppError):
    """Raised when Firestore rejects or fails a read or write."""

    def __init__(self, message="A database error occurred. Please try again later."):
        """Initialize the error."""
        super().__init__(message, 503)
