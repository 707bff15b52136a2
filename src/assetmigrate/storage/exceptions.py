"""
Storage provider exceptions.

Message wording matters: the orchestrator's error classification treats
"not found" and "permission denied" as fatal for an item.
"""

from __future__ import annotations


class StorageError(Exception):
    """
    Base exception for storage provider errors.

    Attributes:
        provider: Name of the provider that raised
        path: Object path involved, if any
    """

    def __init__(self, message: str, *, provider: str = "", path: str | None = None) -> None:
        self.provider = provider
        self.path = path
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when reading an object that does not exist."""

    def __init__(self, path: str, *, provider: str = "") -> None:
        super().__init__(
            f"Object '{path}' not found in storage '{provider}'",
            provider=provider,
            path=path,
        )


class StorageTimeoutError(StorageError, TimeoutError):
    """Raised when a provider operation times out. Always retryable."""


class ReadOnlyViolationError(StorageError):
    """
    Raised when a write is attempted through a read-only view.

    Dry runs wrap every provider in a read-only view; this error reaching
    the caller means a code path tried to mutate during a dry run.
    """

    def __init__(self, operation: str, path: str, *, provider: str = "") -> None:
        self.operation = operation
        super().__init__(
            f"Refusing {operation} of '{path}' on read-only storage '{provider}'",
            provider=provider,
            path=path,
        )


__all__ = [
    "StorageError",
    "ObjectNotFoundError",
    "StorageTimeoutError",
    "ReadOnlyViolationError",
]
