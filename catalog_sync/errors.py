"""Exception hierarchy raised by the catalog synchronization engine."""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all synchronization failures."""


class TransportError(SyncError):
    """Raised when IGDB answers with a non-success status or an unusable body.

    Transport failures are fatal to the running sync; ``status`` and ``body``
    are preserved so operators can tell quota problems from outages. When
    the error stops a running sync, ``result`` and ``checkpoint`` are set
    like on :class:`SyncCancelled`.
    """

    def __init__(self, status: int | None, body: str = "", message: str | None = None) -> None:
        self.status = status
        self.body = body or ""
        self.result: Any = None
        self.checkpoint: Any = None
        if message is None:
            message = f"IGDB request failed: {status}"
            if self.body:
                message = f"{message} {self.body}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "body": self.body}


class AuthError(TransportError):
    """Raised when IGDB rejects the bearer token (HTTP 401/403)."""

    def __init__(self, status: int | None = 401, body: str = "", message: str | None = None) -> None:
        if message is None:
            message = f"IGDB rejected the access token: {status}"
            if body:
                message = f"{message} {body}"
        super().__init__(status, body, message)


class PersistenceError(SyncError):
    """Raised when a single record cannot be written to the local store."""

    def __init__(self, resource: str, external_id: Any, message: str | None = None) -> None:
        self.resource = resource
        self.external_id = external_id
        super().__init__(message or f"failed to persist {resource} record {external_id}")


class SyncCancelled(SyncError):
    """Raised when a sync stops because its cancellation event was set.

    ``result`` holds the counters accumulated before the stop and
    ``checkpoint`` the cursor a caller can resume from.
    """

    def __init__(self, result: Any, checkpoint: Any) -> None:
        self.result = result
        self.checkpoint = checkpoint
        super().__init__(f"sync of {getattr(result, 'resource', '?')} cancelled")


__all__ = [
    "AuthError",
    "PersistenceError",
    "SyncCancelled",
    "SyncError",
    "TransportError",
]
