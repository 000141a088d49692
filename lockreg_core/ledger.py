"""
lockreg_core/ledger.py — In-process execution environment

Stands in for the chain the registry contract is deployed on.  It gives
the registry the guarantees a contract call gets for free:

- Atomicity:  execute() snapshots the contract state, runs the call and
              restores the snapshot if anything raises.  Notifications
              emitted during a failed call are discarded.
- Ordering:   every successful call is included in its own block.
              Notifications carry (position, log_index) and are
              appended to a single append-only log.
- Observers:  query() over historical positions and asyncio-queue
              subscriptions for new notifications.

submit() is the transaction-style surface: it never raises registry
errors and reports the outcome as a Receipt instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import RegistryError
from .model import Notification, NotificationType, Receipt

_log = logging.getLogger(__name__)


class Ledger:
    """Append-only, totally ordered notification log with atomic calls."""

    def __init__(self) -> None:
        self._log: List[Notification] = []
        self._position: int = 0
        self._pending: Optional[List[Dict[str, Any]]] = None
        self._listeners: List[asyncio.Queue] = []
        self._contract: Any = None

    # ------------------------------------------------------------------
    # Contract binding
    # ------------------------------------------------------------------

    def deploy(self, contract: Any) -> None:
        """Bind the contract whose operations submit() dispatches to.

        The contract must provide snapshot(), restore(snapshot) and an
        OPERATIONS collection naming its transaction-style methods.
        """
        if self._contract is not None:
            raise RuntimeError("A contract is already deployed on this ledger")
        self._contract = contract

    @property
    def contract(self) -> Any:
        return self._contract

    # ------------------------------------------------------------------
    # Atomic execution
    # ------------------------------------------------------------------

    def execute(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run fn as one atomic call against the deployed contract.

        On success a new block is produced containing every notification
        fn emitted, in emission order.  On failure the contract state is
        restored and the exception propagates.
        """
        if self._contract is None:
            raise RuntimeError("No contract deployed on this ledger")
        if self._pending is not None:
            raise RuntimeError("Nested ledger calls are not supported")

        snapshot = self._contract.snapshot()
        self._pending = []
        try:
            result = fn(*args, **kwargs)
            # Notifications are validated before anything becomes visible
            block = [
                Notification(position=self._position + 1, log_index=i, **fields)
                for i, fields in enumerate(self._pending)
            ]
        except BaseException:
            self._contract.restore(snapshot)
            raise
        finally:
            self._pending = None

        self._mine(block)
        return result

    def emit(self, notification_type: NotificationType, **fields: Any) -> None:
        """Buffer a notification for the block of the current call."""
        if self._pending is None:
            raise RuntimeError("emit() called outside of a ledger call")
        self._pending.append({"type": notification_type, **fields})

    def _mine(self, block: List[Notification]) -> None:
        self._position += 1
        self._log.extend(block)
        for note in block:
            for queue in list(self._listeners):
                queue.put_nowait(note)
        _log.debug(
            "block %d mined with %d notification(s)", self._position, len(block)
        )

    # ------------------------------------------------------------------
    # Transaction-style submission
    # ------------------------------------------------------------------

    def submit(
        self,
        operation: str,
        args: Sequence[Any],
        caller: str,
    ) -> Receipt:
        """Submit operation(caller, *args) to the deployed contract."""
        operations = getattr(self._contract, "OPERATIONS", ())
        if operation not in operations:
            return Receipt(
                operation=operation,
                success=False,
                error="UnknownOperation",
                reason=f"Unknown operation: {operation}",
            )

        first = len(self._log)
        try:
            result = getattr(self._contract, operation)(caller, *args)
        except RegistryError as exc:
            return Receipt(
                operation=operation,
                success=False,
                error=type(exc).__name__,
                reason=str(exc),
            )
        return Receipt(
            operation=operation,
            success=True,
            position=self._position,
            notifications=self._log[first:],
            result=result,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_position(self) -> int:
        """Latest block number (0 before the first call)."""
        return self._position

    @property
    def notifications(self) -> List[Notification]:
        """The full log (read-only copy)."""
        return list(self._log)

    def query(
        self,
        notification_type: Optional[NotificationType] = None,
        device_id: Optional[int] = None,
        from_position: int = 1,
        to_position: Optional[int] = None,
    ) -> List[Notification]:
        """Historical notifications in [from_position, to_position], in order."""
        upper = self._position if to_position is None else to_position
        return [
            note for note in self._log
            if from_position <= note.position <= upper
            and (notification_type is None or note.type == notification_type)
            and (device_id is None or note.device_id == device_id)
        ]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        """Register a queue that receives every notification mined from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)
