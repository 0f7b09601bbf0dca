"""Exception hierarchy for the persistence engine."""

from __future__ import annotations


class PersistenceError(Exception):
    """Base class for every error raised by diagram_sessions."""


class DiagramTooLargeError(PersistenceError, ValueError):
    """Diagram xml exceeds the configured size ceiling.

    Raised before any state change or storage write.
    """

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Diagram xml too large: {size:,} chars (max {limit:,})")


class StorageError(PersistenceError):
    """The durable store could not read or write a record."""


class StorageQuotaExceededError(StorageError):
    """The durable store has no room for the record being written."""


class RemoteSyncError(PersistenceError):
    """A call to the remote conversation store failed."""
