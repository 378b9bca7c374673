from __future__ import annotations


class PersistenceError(Exception):
    """Base class for every error raised by the persistence layer."""


class BackendUnavailableError(PersistenceError):
    """Raised when the preferred backend cannot be reached."""


class DatabaseInitializationError(PersistenceError):
    """Raised when no backend could be initialized at startup."""


class RecordValidationError(PersistenceError):
    """Raised when a payload or a stored constraint rejects a write."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class MigrationError(PersistenceError):
    """Raised when the one-time embedded -> client/server copy fails as a whole."""
