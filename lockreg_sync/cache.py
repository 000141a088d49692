"""
lockreg_sync/cache.py — Off-chain revocation cache

A lock checks credentials against a local mirror of the registry's
revocation ledger so that a lookup never waits on the network.  The
mirror is kept current by three paths that all converge on the same
state:

    replay          initialize(): catch up from the persisted checkpoint
    real-time       a listener task consuming source.subscribe()
    reconciliation  a periodic task re-querying checkpoint+1 .. head

Every fingerprint is applied idempotently, keyed on (device_id,
fingerprint), so overlaps between the paths are harmless.  The mirror is
only written under one asyncio.Lock; lookups read it without locking.

The checkpoint is the highest position below which every revocation is
known to be in the mirror.  Replay and reconciliation advance it per
completed window.  The real-time path advances it only while the
subscription has been continuous since the last complete pass, and only
to the block before the notification it just applied.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError

from lockreg_core.crypto import BytesLike, fingerprint_credential, normalize_fingerprint
from lockreg_core.model import Notification, NotificationType

from .config import SyncConfig
from .errors import MalformedNotification, ReconciliationError, SyncError
from .sources import EventSource, Subscription
from .storage import CacheStorage

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class CacheState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SYNCING = "syncing"
    STOPPED = "stopped"


class HealthReport(BaseModel):
    """Result of RevocationCache.health()."""

    healthy: bool
    state: CacheState
    current_position: Optional[int] = Field(
        default=None,
        description="Head of the source. None when it could not be queried.",
    )
    last_checkpoint: int
    behind: Optional[int] = None
    listening: bool = False
    reconciling: bool = False
    last_error: Optional[str] = None


class CacheStats(BaseModel):
    """Counters describing what the cache has absorbed so far."""

    state: CacheState
    devices: int = 0
    fingerprints: int = 0
    last_checkpoint: int = 0
    realtime_additions: int = 0
    batch_additions: int = 0
    duplicates_skipped: int = 0
    malformed_skipped: int = 0
    last_realtime_update: Optional[datetime] = None
    last_reconciliation: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class RevocationCache:
    """Local mirror of credential revocations.

    Args:
        source:  EventSource to replay, subscribe to and reconcile against.
        storage: Persistence for the mirror and checkpoint.  Defaults to a
                 CacheStorage at config.db_path, owned by the cache and
                 closed by stop().
        config:  Window size, reconciliation interval, health threshold.
    """

    def __init__(
        self,
        source: EventSource,
        storage: Optional[CacheStorage] = None,
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._source = source
        self._owns_storage = storage is None
        self._storage: Optional[CacheStorage] = storage
        if self._storage is None:
            self._storage = CacheStorage(self.config.db_path)

        self._mirror: Dict[int, Set[str]] = {}
        self._checkpoint: int = 0
        self._state = CacheState.UNINITIALIZED
        self._initialized = False

        self._lock = asyncio.Lock()
        self._reconcile_lock = asyncio.Lock()
        self._listener_task: Optional[asyncio.Task] = None
        self._reconciler_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._continuous = False
        self._reconciling = False
        self._last_error: Optional[str] = None

        self._realtime_additions = 0
        self._batch_additions = 0
        self._duplicates_skipped = 0
        self._malformed_skipped = 0
        self._last_realtime_update: Optional[datetime] = None
        self._last_reconciliation: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def storage(self) -> Optional[CacheStorage]:
        """None after stop() closed storage the cache opened itself."""
        return self._storage

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def last_checkpoint(self) -> int:
        return self._checkpoint

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def listening(self) -> bool:
        return self._listener_task is not None and self._subscription is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Load persisted state and replay up to the current head.

        Returns:
            Number of fingerprints added by the replay.

        Raises:
            ReconciliationError: replay stopped early.  Windows completed
                before the failure stay applied and persisted.
        """
        async with self._reconcile_lock:
            self._load()
            added = await self._reconcile_locked()
        self._state = CacheState.SYNCING
        _log.info("cache synchronized to position %d", self._checkpoint)
        return added

    def _open_storage(self) -> CacheStorage:
        if self._storage is None:
            self._storage = CacheStorage(self.config.db_path)
        return self._storage

    def _load(self) -> None:
        storage = self._open_storage()
        self._mirror = storage.load_mirror()
        self._checkpoint = storage.load_checkpoint()
        self._initialized = True
        _log.info(
            "cache loaded %d fingerprint(s), checkpoint %d",
            sum(len(fps) for fps in self._mirror.values()), self._checkpoint,
        )

    async def start(self) -> None:
        """Initialize if needed, then run the listener and reconciler tasks."""
        if self._listener_task is not None:
            return
        if not self._initialized:
            await self.initialize()

        self._state = CacheState.SYNCING
        self._listener_task = asyncio.create_task(
            self._listen(), name="lockreg-cache-listener"
        )
        if self.config.reconcile_interval > 0:
            self._reconciler_task = asyncio.create_task(
                self._reconcile_loop(), name="lockreg-cache-reconciler"
            )
        _log.info("cache started")

    async def stop(self) -> None:
        """Cancel background tasks and flush the checkpoint.

        Storage the cache opened itself is closed; start() reopens it and
        reloads the persisted state.  Injected storage stays open.
        """
        await self._cancel_tasks()
        if self._initialized:
            async with self._lock:
                self._storage.save([], self._checkpoint)
        if self._owns_storage and self._storage is not None:
            async with self._reconcile_lock:
                self._storage.close()
                self._storage = None
                self._initialized = False
        if self._state != CacheState.STOPPED:
            self._state = CacheState.STOPPED
            _log.info("cache stopped at checkpoint %d", self._checkpoint)

    async def force_resync(self) -> int:
        """Discard everything and rebuild the mirror from genesis.

        Returns:
            Number of fingerprints in the rebuilt mirror.
        """
        was_running = self._listener_task is not None
        await self._cancel_tasks()

        # A pass already in flight finishes before the discard; none can
        # start until the replay below is done.
        async with self._reconcile_lock:
            async with self._lock:
                self._open_storage().clear()
                self._mirror = {}
                self._checkpoint = 0
                self._initialized = True
            self._state = CacheState.UNINITIALIZED
            _log.info("cache state discarded, resynchronizing from genesis")
            added = await self._reconcile_locked()

        self._state = CacheState.SYNCING
        _log.info("cache synchronized to position %d", self._checkpoint)
        if was_running:
            await self.start()
        return added

    async def _cancel_tasks(self) -> None:
        tasks = [t for t in (self._listener_task, self._reconciler_task) if t is not None]
        self._listener_task = None
        self._reconciler_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Replay / reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> int:
        """Re-query checkpoint+1 .. head and merge what is missing.

        Returns:
            Number of fingerprints added.

        Raises:
            ReconciliationError: a window could not be fetched or decoded.
        """
        async with self._reconcile_lock:
            if not self._initialized:
                self._load()
            return await self._reconcile_locked()

    async def _reconcile_locked(self) -> int:
        self._reconciling = True
        try:
            added = await self._sync_to_head()
        finally:
            self._reconciling = False

        subscription = self._subscription
        if subscription is not None and self._checkpoint >= subscription.start_position:
            self._continuous = True
        self._last_error = None
        self._last_reconciliation = _now()
        return added

    async def _sync_to_head(self) -> int:
        start = self._checkpoint + 1
        try:
            head = await self._source.current_position()
        except SyncError as exc:
            raise self._failure(start, start, exc) from exc

        added = 0
        window = self.config.window_size
        while start <= head:
            end = min(start + window - 1, head)
            try:
                notes = [self._coerce(n) for n in await self._source.query(start, end)]
            except SyncError as exc:
                raise self._failure(start, end, exc) from exc

            async with self._lock:
                if self._checkpoint < start - 1:
                    # Mirror was reset while the window was in flight
                    _log.warning(
                        "checkpoint moved back to %d during window %d-%d, restarting pass",
                        self._checkpoint, start, end,
                    )
                    start = self._checkpoint + 1
                    continue
                entries = self._new_entries(notes)
                checkpoint = max(self._checkpoint, end)
                self._storage.save(entries, checkpoint)
                self._merge(entries)
                self._checkpoint = checkpoint

            added += len(entries)
            self._batch_additions += len(entries)
            _log.debug(
                "window %d-%d: %d notification(s), %d new", start, end,
                len(notes), len(entries),
            )
            start = end + 1
        return added

    def _failure(self, start: int, end: int, exc: SyncError) -> ReconciliationError:
        self._last_error = str(exc)
        _log.warning(
            "synchronization of positions %d-%d failed; mirror kept at checkpoint %d",
            start, end, self._checkpoint, exc_info=True,
        )
        return ReconciliationError(start, end, exc)

    async def _reconcile_loop(self) -> None:
        interval = self.config.reconcile_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile()
            except ReconciliationError:
                _log.info("reconciliation will be retried in %.0fs", interval)

    # ------------------------------------------------------------------
    # Real-time path
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        delay = self.config.resubscribe_delay
        while True:
            try:
                subscription = await self._source.subscribe()
            except SyncError as exc:
                self._last_error = str(exc)
                _log.warning("subscription failed, retrying in %.1fs", delay, exc_info=True)
                await asyncio.sleep(delay)
                continue

            self._subscription = subscription
            self._continuous = False
            try:
                # Covers everything up to the subscription's start
                await self.reconcile()
            except ReconciliationError:
                _log.info("real-time updates will not advance the checkpoint until reconciled")

            try:
                async for payload in subscription:
                    await self._apply_realtime(payload)
            except SyncError as exc:
                self._last_error = str(exc)
                _log.warning("subscription failed", exc_info=True)
            finally:
                self._subscription = None
                self._continuous = False
                await subscription.close()

            _log.warning("subscription dropped, resubscribing in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _apply_realtime(self, payload: Any) -> None:
        try:
            note = self._coerce(payload)
        except MalformedNotification:
            self._malformed_skipped += 1
            _log.warning("skipping malformed notification", exc_info=True)
            return

        async with self._lock:
            entries = self._new_entries([note])
            checkpoint = self._checkpoint
            if self._continuous:
                checkpoint = max(checkpoint, note.position - 1)
            self._storage.save(entries, checkpoint)
            self._merge(entries)
            self._checkpoint = checkpoint

        self._realtime_additions += len(entries)
        self._last_realtime_update = _now()
        if entries:
            _log.debug(
                "device %d: credential %s revoked (position %d)",
                note.device_id, note.fingerprint, note.position,
            )

    # ------------------------------------------------------------------
    # Mirror updates (callers hold self._lock)
    # ------------------------------------------------------------------

    def _new_entries(self, notes: Iterable[Notification]) -> List[Tuple[int, str, int]]:
        entries: List[Tuple[int, str, int]] = []
        seen: Set[Tuple[int, str]] = set()
        for note in notes:
            key = (note.device_id, note.fingerprint)
            if key in seen or note.fingerprint in self._mirror.get(note.device_id, ()):
                self._duplicates_skipped += 1
                continue
            seen.add(key)
            entries.append((note.device_id, note.fingerprint, note.position))
        return entries

    def _merge(self, entries: Iterable[Tuple[int, str, int]]) -> None:
        for device_id, fingerprint, _ in entries:
            self._mirror.setdefault(device_id, set()).add(fingerprint)

    @staticmethod
    def _coerce(payload: Any) -> Notification:
        if isinstance(payload, Notification):
            note = payload
        else:
            try:
                note = Notification.model_validate(payload)
            except ValidationError as exc:
                raise MalformedNotification(payload, str(exc)) from exc
        if note.type != NotificationType.CREDENTIAL_REVOKED:
            raise MalformedNotification(payload, f"unexpected type {note.type.value}")
        return note

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def is_revoked(self, device_id: int, fingerprint: BytesLike) -> bool:
        try:
            fp = normalize_fingerprint(fingerprint)
        except (TypeError, ValueError):
            return False
        return fp in self._mirror.get(device_id, ())

    def is_credential_revoked(self, device_id: int, credential: Mapping[str, Any]) -> bool:
        """Fingerprint credential and look it up."""
        try:
            fp = fingerprint_credential(credential)
        except (TypeError, ValueError):
            return False
        return fp in self._mirror.get(device_id, ())

    def revoked_fingerprints(self, device_id: int) -> List[str]:
        return sorted(self._mirror.get(device_id, ()))

    def revoked_count(self, device_id: int) -> int:
        return len(self._mirror.get(device_id, ()))

    def stats(self) -> CacheStats:
        return CacheStats(
            state=self._state,
            devices=len(self._mirror),
            fingerprints=sum(len(fps) for fps in self._mirror.values()),
            last_checkpoint=self._checkpoint,
            realtime_additions=self._realtime_additions,
            batch_additions=self._batch_additions,
            duplicates_skipped=self._duplicates_skipped,
            malformed_skipped=self._malformed_skipped,
            last_realtime_update=self._last_realtime_update,
            last_reconciliation=self._last_reconciliation,
        )

    async def health(self) -> HealthReport:
        """Distance between the checkpoint and the source head.  Never raises."""
        checkpoint = self._checkpoint
        try:
            current = await self._source.current_position()
        except SyncError as exc:
            return HealthReport(
                healthy=False,
                state=self._state,
                last_checkpoint=checkpoint,
                listening=self.listening,
                reconciling=self._reconciling,
                last_error=str(exc),
            )

        behind = max(0, current - checkpoint)
        return HealthReport(
            healthy=behind < self.config.health_threshold,
            state=self._state,
            current_position=current,
            last_checkpoint=checkpoint,
            behind=behind,
            listening=self.listening,
            reconciling=self._reconciling,
            last_error=self._last_error,
        )
