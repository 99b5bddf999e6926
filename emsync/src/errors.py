"""
Error taxonomy for the history sync daemon.

- TransportError: the metering device answered with a non-success status,
  an unparsable body, or could not be reached at all.
- StorageError: a read, write, or connectivity failure against InfluxDB.
- ConfigurationError: invalid or unreadable configuration (fatal at startup).

Shutdown cancellation is signalled with the standard asyncio.CancelledError
and is not part of this hierarchy.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all errors raised by the sync pipeline."""


class TransportError(SyncError):
    """Device request failed or returned a malformed body.

    Args:
        message: Human readable description.
        status_code: HTTP status code, or None when no response was received.
        body: Response body text (truncated by the caller if needed).
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        if not self.body:
            return f"{base} (HTTP {self.status_code})"
        return f"{base} (HTTP {self.status_code}): {self.body}"


class StorageError(SyncError):
    """Read, write, or connect failure against the storage backend."""


class ConfigurationError(SyncError):
    """Configuration is missing, unreadable, or invalid."""
