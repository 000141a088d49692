"""
lockreg_sync/errors.py — Synchronization failures.

These are kept apart from registry errors: a cache never raises
registry errors for data it already mirrors, it only reports problems
with keeping the mirror current.
"""

from __future__ import annotations

from typing import Any, Optional


class SyncError(Exception):
    """Base synchronization error."""


class SourceUnavailable(SyncError):
    """The event source could not be queried."""


class MalformedNotification(SyncError):
    """A notification could not be decoded or is not a revocation."""

    def __init__(self, payload: Any, reason: str):
        self.payload = payload
        self.reason = reason
        super().__init__(f"Malformed notification ({reason}): {payload!r}")


class ReconciliationError(SyncError):
    """A replay or reconciliation pass stopped before reaching the head.

    Windows completed before the failure stay applied; from_position is
    the first position that still has to be synchronized.
    """

    def __init__(
        self,
        from_position: int,
        to_position: int,
        cause: Optional[BaseException] = None,
    ):
        self.from_position = from_position
        self.to_position = to_position
        self.cause = cause
        super().__init__(
            f"Synchronization of positions {from_position}-{to_position} "
            f"failed: {cause}"
        )
