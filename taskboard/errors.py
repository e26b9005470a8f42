"""
Error taxonomy shared by the store, the backends and the mutation engine.

    ValidationError  precondition failed locally, nothing was applied
    ConflictError    uniqueness constraint rejected a create/update
    NotFoundError    referenced entity does not exist (any more)
    BackendError     any other failure of a remote call
    IntentError      the intent service could not produce an answer
"""
from typing import Optional


class TaskboardError(Exception):
    """Base class for all taskboard errors."""
    pass


class ValidationError(TaskboardError):
    """Raised when a mutation's preconditions are not met."""
    pass


class ConflictError(TaskboardError):
    """Raised when a uniqueness constraint rejects a write.

    `field` names the conflicting attribute ("name", "color") when the
    backend can tell which constraint fired.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(TaskboardError):
    """Raised when an entity cannot be found."""
    pass


class BackendError(TaskboardError):
    """Raised when a remote call fails for any other reason."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class IntentError(TaskboardError):
    """Raised when the intent service fails or returns garbage."""
    pass


class ConfigError(TaskboardError):
    """Raised when configuration is invalid or incomplete."""
    pass
