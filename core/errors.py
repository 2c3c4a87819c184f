"""Error taxonomy for the sync subsystem.

Every error the executor reports carries the HTTP status the entry point
answers with. The client never re-interprets these directly; it hands them to
:func:`services.sync_errors.disposition`.
"""
from __future__ import annotations


class SyncError(Exception):
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class Unauthorized(SyncError):
    """Missing, invalid or expired bearer credential."""

    status_code = 401


class InvalidRequest(SyncError):
    """Malformed request; replaying it unchanged cannot succeed."""

    status_code = 400


class KeyConflict(SyncError):
    """Idempotency key reused with a different payload."""

    status_code = 409


class TransientInfra(SyncError):
    """Database or network outage on the server side."""

    status_code = 500


class StorageFailure(SyncError):
    """The client could not persist a queued operation."""

    status_code = 507


__all__ = [
    "InvalidRequest",
    "KeyConflict",
    "StorageFailure",
    "SyncError",
    "TransientInfra",
    "Unauthorized",
]
