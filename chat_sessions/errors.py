"""Exceptions raised by the session store.

All errors inherit from SessionStoreError so callers can catch the whole
family at the boundary of an interactive loop or CLI.
"""

__all__ = [
    "SessionStoreError",
    "NotFoundError",
    "ValidationError",
    "StorageIOError",
    "CorruptionError",
    "UnavailableError",
]


class SessionStoreError(Exception):
    """Base exception for all session store errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class NotFoundError(SessionStoreError):
    """Raised when a session, backend type or merge endpoint does not exist."""

    def __init__(self, kind: str, identifier: str, details: str | None = None):
        super().__init__(f"{kind} not found: {identifier}", details)
        self.kind = kind
        self.identifier = identifier


class ValidationError(SessionStoreError):
    """Raised when an argument is rejected before any state is touched."""

    def __init__(self, message: str, field: str | None = None):
        details = f"Field: {field}" if field else None
        super().__init__(message, details)
        self.field = field


class StorageIOError(SessionStoreError):
    """Raised when reading or writing persistent storage fails."""

    def __init__(self, operation: str, target: str, reason: str | None = None):
        super().__init__(f"Failed to {operation}: {target}", details=reason)
        self.operation = operation
        self.target = target


class CorruptionError(SessionStoreError):
    """Raised when a persisted document cannot be parsed."""

    def __init__(self, target: str, reason: str | None = None):
        super().__init__(f"Corrupted session data: {target}", details=reason)
        self.target = target


class UnavailableError(SessionStoreError):
    """Raised when a storage backend is not registered."""

    def __init__(self, backend: str, available: list[str]):
        super().__init__(
            f"Storage backend not available: '{backend}'",
            details=f"Available backends: {', '.join(sorted(available)) or 'none'}",
        )
        self.backend = backend
        self.available = available
