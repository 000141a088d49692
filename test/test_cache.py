"""
test/test_cache.py — Tests for the off-chain RevocationCache

Run:  python test/test_cache.py
"""

import asyncio
import json
import os
import sqlite3
import sys
import tempfile
import traceback

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core import (
    DeviceRegistry,
    Ledger,
    Notification,
    NotificationType,
    fingerprint_credential,
    generate_device_key,
    sign_fingerprint,
)
from lockreg_sync import (
    CacheState,
    CacheStorage,
    LedgerEventSource,
    MalformedNotification,
    ReconciliationError,
    RevocationCache,
    SourceUnavailable,
    SyncConfig,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PASS = 0
_FAIL = 0


def _ok(name: str) -> None:
    global _PASS
    _PASS += 1
    print(f"  PASS: {name}")


def _fail(name: str, err: Exception) -> None:
    global _FAIL
    _FAIL += 1
    print(f"  FAIL: {name} — {err}")
    traceback.print_exc()


def _fp(i: int) -> str:
    return "0x" + i.to_bytes(32, "big").hex()


class _World:
    """A ledger, a registry and n registered devices sharing one owner."""

    def __init__(self, devices: int = 3):
        self.ledger = Ledger()
        self.admin = generate_device_key().address
        self.owner = generate_device_key().address
        self.registry = DeviceRegistry(self.ledger, root_admin=self.admin)
        self.keys = {}
        for _ in range(devices):
            key = generate_device_key()
            device_id = self.registry.register(self.owner, key.address)
            self.keys[device_id] = key
        self._next = 1

    def revoke(self, device_id: int, fingerprint: str = None) -> str:
        if fingerprint is None:
            fingerprint = _fp(self._next)
            self._next += 1
        self.registry.revoke(
            self.owner, device_id, fingerprint,
            sign_fingerprint(self.keys[device_id].key, fingerprint),
        )
        return fingerprint


def _tmp_db() -> str:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        return f.name


def _cleanup(storage: CacheStorage, db_path: str) -> None:
    """Close storage connection then delete temp DB (Windows-safe)."""
    try:
        storage.close()
    except Exception:
        pass
    try:
        os.unlink(db_path)
    except Exception:
        pass


def _make_cache(source, db_path: str, **overrides) -> RevocationCache:
    settings = {"reconcile_interval": 0, "resubscribe_delay": 60.0}
    settings.update(overrides)
    storage = CacheStorage(db_path)
    return RevocationCache(source, storage, SyncConfig(db_path=db_path, **settings))


class _FlakySource(LedgerEventSource):
    """Ledger source whose queries can be made to fail."""

    def __init__(self, ledger: Ledger):
        super().__init__(ledger)
        self.fail_from = None
        self.down = False

    async def current_position(self) -> int:
        if self.down:
            raise SourceUnavailable("node unreachable")
        return await super().current_position()

    async def query(self, from_position, to_position, device_id=None):
        if self.fail_from is not None and to_position >= self.fail_from:
            raise SourceUnavailable(f"log query {from_position}-{to_position} timed out")
        return await super().query(from_position, to_position, device_id)


class _ScriptedSubscription:
    def __init__(self, payloads, start_position: int):
        self.start_position = start_position
        self._payloads = list(payloads)
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for payload in self._payloads:
            yield payload
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class _ScriptedSource:
    """Source delivering hand-written payloads (possibly malformed)."""

    def __init__(self, head: int, history=(), live=()):
        self.head = head
        self.history = list(history)
        self.live = list(live)

    async def current_position(self) -> int:
        return self.head

    async def query(self, from_position, to_position, device_id=None):
        return [p for p in self.history if from_position <= p["position"] <= to_position]

    async def subscribe(self):
        return _ScriptedSubscription(self.live, self.head)


def _revocation_payload(position: int, fingerprint: str, device_id: int = 1) -> dict:
    return {
        "type": "CredentialRevoked",
        "position": position,
        "device_id": device_id,
        "fingerprint": fingerprint,
        "owner": "0x" + "11" * 20,
    }


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_initialize_replays_history_in_windows():
    db_path = _tmp_db()
    world = _World()
    revoked = [world.revoke(1), world.revoke(2), world.revoke(1), world.revoke(3), world.revoke(1)]

    cache = _make_cache(LedgerEventSource(world.ledger), db_path, window_size=2)
    try:
        added = asyncio.run(cache.initialize())
        assert added == 5
        assert cache.state == CacheState.SYNCING
        assert cache.last_checkpoint == world.ledger.current_position()
        assert cache.revoked_count(1) == 3
        assert all(cache.is_revoked(d, f) for d, f in zip((1, 2, 1, 3, 1), revoked))
        assert cache.revoked_fingerprints(1) == world.registry.revoked_fingerprints(1)

        stats = cache.stats()
        assert stats.devices == 3 and stats.fingerprints == 5
        assert stats.batch_additions == 5 and stats.realtime_additions == 0
        assert stats.last_reconciliation is not None

        _ok("test_initialize_replays_history_in_windows")
    finally:
        _cleanup(cache.storage, db_path)


def test_realtime_updates_and_checkpoint():
    db_path = _tmp_db()
    world = _World()
    cache = _make_cache(LedgerEventSource(world.ledger), db_path)

    async def _run():
        await cache.start()
        await asyncio.sleep(0.01)
        assert cache.listening

        first = world.revoke(2)
        second = world.revoke(3)
        await asyncio.sleep(0.01)

        assert cache.is_revoked(2, first)
        assert cache.is_revoked(3, second)
        assert cache.stats().realtime_additions == 2
        # Every block before the last revocation is fully observed
        assert cache.last_checkpoint == world.ledger.current_position() - 1
        await cache.stop()

    try:
        asyncio.run(_run())
        assert cache.state == CacheState.STOPPED
        _ok("test_realtime_updates_and_checkpoint")
    finally:
        _cleanup(cache.storage, db_path)


def test_cache_convergence_after_missed_notifications():
    """Whatever the subscription misses, reconciliation restores the registry view."""
    db_path = _tmp_db()
    world = _World()
    source = LedgerEventSource(world.ledger)
    cache = _make_cache(source, db_path, window_size=3)

    async def _run():
        world.revoke(1)
        await cache.start()
        await asyncio.sleep(0.01)
        world.revoke(2)
        world.revoke(3)
        await asyncio.sleep(0.01)

        source.disconnect()
        await asyncio.sleep(0.01)
        assert not cache.listening
        checkpoint = cache.last_checkpoint

        missed = [world.revoke(1), world.revoke(2), world.revoke(2), world.revoke(3)]
        await asyncio.sleep(0.01)
        assert not any(cache.is_revoked(d, f) for d, f in zip((1, 2, 2, 3), missed))
        assert cache.last_checkpoint == checkpoint

        await cache.reconcile()
        for device_id in world.keys:
            assert cache.revoked_fingerprints(device_id) == \
                world.registry.revoked_fingerprints(device_id)
            assert cache.revoked_count(device_id) == \
                world.registry.get_revoked_count(device_id)
        assert cache.last_checkpoint == world.ledger.current_position()
        await cache.stop()

    try:
        asyncio.run(_run())
        _ok("test_cache_convergence_after_missed_notifications")
    finally:
        _cleanup(cache.storage, db_path)


def test_scenario_e_disconnect_and_force_resync():
    db_path = _tmp_db()
    world = _World(devices=3)
    for _ in range(50):
        world.revoke(3)

    source = LedgerEventSource(world.ledger)
    cache = _make_cache(source, db_path)

    async def _run():
        await cache.start()
        await asyncio.sleep(0.01)
        assert cache.revoked_count(3) == 50

        source.disconnect()
        await asyncio.sleep(0.01)
        for _ in range(10):
            world.revoke(3)
        await asyncio.sleep(0.01)
        assert cache.revoked_count(3) == 50

        rebuilt = await cache.force_resync()
        assert rebuilt == 60
        assert cache.revoked_count(3) == 60
        assert cache.revoked_fingerprints(3) == world.registry.revoked_fingerprints(3)

        await asyncio.sleep(0.01)
        assert cache.listening
        world.revoke(3)
        await asyncio.sleep(0.01)
        assert cache.revoked_count(3) == 61
        await cache.stop()

    try:
        asyncio.run(_run())
        _ok("test_scenario_e_disconnect_and_force_resync")
    finally:
        _cleanup(cache.storage, db_path)


def test_duplicates_are_skipped():
    db_path = _tmp_db()
    world = _World()
    cache = _make_cache(LedgerEventSource(world.ledger), db_path)

    async def _run():
        await cache.start()
        await asyncio.sleep(0.01)
        fingerprint = world.revoke(1)
        await asyncio.sleep(0.01)

        # The real-time path left the last block to reconciliation
        added = await cache.reconcile()
        assert added == 0
        assert cache.revoked_fingerprints(1) == [fingerprint]
        assert cache.stats().duplicates_skipped == 1
        await cache.stop()

    try:
        asyncio.run(_run())
        _ok("test_duplicates_are_skipped")
    finally:
        _cleanup(cache.storage, db_path)


def test_failed_window_keeps_stale_mirror_available():
    db_path = _tmp_db()
    world = _World()
    for device_id in (1, 2, 3, 1, 2, 3):
        world.revoke(device_id)
    # positions: 1-3 registrations, 4-9 revocations
    source = _FlakySource(world.ledger)
    source.fail_from = 7
    cache = _make_cache(source, db_path, window_size=3, health_threshold=2)

    async def _run():
        try:
            await cache.initialize()
            assert False, "Should have raised ReconciliationError"
        except ReconciliationError as e:
            assert e.from_position == 7 and e.to_position == 9
            assert isinstance(e.cause, SourceUnavailable)

        assert cache.last_checkpoint == 6
        assert cache.stats().fingerprints == 3
        assert cache.is_revoked(1, _fp(1))
        assert not cache.is_revoked(1, _fp(4))
        assert "timed out" in cache.last_error

        report = await cache.health()
        assert not report.healthy
        assert report.behind == 3
        assert report.last_error == cache.last_error

        source.fail_from = None
        assert await cache.reconcile() == 3
        assert cache.is_revoked(1, _fp(4))
        assert cache.last_error is None
        assert (await cache.health()).healthy

    try:
        asyncio.run(_run())
        _ok("test_failed_window_keeps_stale_mirror_available")
    finally:
        _cleanup(cache.storage, db_path)


def test_health_never_raises():
    db_path = _tmp_db()
    world = _World()
    source = _FlakySource(world.ledger)
    cache = _make_cache(source, db_path)

    async def _run():
        await cache.initialize()
        report = await cache.health()
        assert report.healthy
        assert report.behind == 0
        assert report.current_position == world.ledger.current_position()

        source.down = True
        report = await cache.health()
        assert not report.healthy
        assert report.current_position is None
        assert "unreachable" in report.last_error

        try:
            await cache.reconcile()
            assert False, "Should have raised ReconciliationError"
        except ReconciliationError:
            pass

    try:
        asyncio.run(_run())
        _ok("test_health_never_raises")
    finally:
        _cleanup(cache.storage, db_path)


def test_periodic_reconciliation():
    db_path = _tmp_db()
    world = _World()
    source = LedgerEventSource(world.ledger)
    cache = _make_cache(source, db_path, reconcile_interval=0.02)

    async def _run():
        await cache.start()
        await asyncio.sleep(0.01)
        source.disconnect()
        await asyncio.sleep(0.01)

        fingerprint = world.revoke(2)
        await asyncio.sleep(0.1)
        assert cache.is_revoked(2, fingerprint)
        assert cache.last_checkpoint == world.ledger.current_position()
        await cache.stop()

    try:
        asyncio.run(_run())
        _ok("test_periodic_reconciliation")
    finally:
        _cleanup(cache.storage, db_path)


def test_stop_is_safe_before_initialize_and_twice():
    db_path = _tmp_db()
    world = _World()
    cache = _make_cache(LedgerEventSource(world.ledger), db_path)

    async def _run():
        assert cache.state == CacheState.UNINITIALIZED
        await cache.stop()
        await cache.stop()
        assert cache.state == CacheState.STOPPED
        assert not cache.is_revoked(1, _fp(1))

        await cache.start()
        assert cache.state == CacheState.SYNCING
        await cache.stop()
        await cache.stop()
        assert cache.state == CacheState.STOPPED
        assert world.ledger.subscriber_count == 0

    try:
        asyncio.run(_run())
        _ok("test_stop_is_safe_before_initialize_and_twice")
    finally:
        _cleanup(cache.storage, db_path)


def test_restart_resumes_from_checkpoint():
    db_path = _tmp_db()
    world = _World()
    for device_id in (1, 2, 3):
        world.revoke(device_id)

    source = LedgerEventSource(world.ledger)
    first = _make_cache(source, db_path)
    asyncio.run(first.initialize())
    asyncio.run(first.stop())
    checkpoint = first.last_checkpoint
    first.storage.close()

    world.revoke(1)
    world.revoke(1)

    second = _make_cache(source, db_path)
    try:
        added = asyncio.run(second.initialize())
        assert added == 2
        assert second.stats().batch_additions == 2
        assert second.stats().fingerprints == 5
        assert second.last_checkpoint == world.ledger.current_position() > checkpoint

        snapshot = second.storage.export_snapshot()
        data = json.loads(snapshot.model_dump_json())
        assert data["last_checkpoint"] == second.last_checkpoint
        assert len(data["mirror"]["1"]) == 3

        _ok("test_restart_resumes_from_checkpoint")
    finally:
        _cleanup(second.storage, db_path)


def test_malformed_realtime_notifications_are_skipped():
    db_path = _tmp_db()
    good = _revocation_payload(2, _fp(7))
    registration = Notification(
        type=NotificationType.DEVICE_REGISTERED,
        position=2, device_id=4,
        owner="0x" + "11" * 20, bound_key="0x" + "22" * 20,
    )
    source = _ScriptedSource(
        head=1,
        live=[_revocation_payload(2, "0xnothex"), registration, "garbage", good],
    )
    cache = _make_cache(source, db_path)

    async def _run():
        await cache.start()
        await asyncio.sleep(0.01)
        assert cache.is_revoked(1, _fp(7))
        stats = cache.stats()
        assert stats.malformed_skipped == 3
        assert stats.realtime_additions == 1
        await cache.stop()

    try:
        asyncio.run(_run())
        _ok("test_malformed_realtime_notifications_are_skipped")
    finally:
        _cleanup(cache.storage, db_path)


def test_malformed_history_aborts_reconciliation():
    db_path = _tmp_db()
    source = _ScriptedSource(
        head=3,
        history=[_revocation_payload(1, _fp(1)), {"type": "CredentialRevoked", "position": 2}],
    )
    cache = _make_cache(source, db_path, window_size=1)

    async def _run():
        try:
            await cache.initialize()
            assert False, "Should have raised ReconciliationError"
        except ReconciliationError as e:
            assert isinstance(e.cause, MalformedNotification)
            assert e.from_position == 2
        assert cache.is_revoked(1, _fp(1))
        assert cache.last_checkpoint == 1

    try:
        asyncio.run(_run())
        _ok("test_malformed_history_aborts_reconciliation")
    finally:
        _cleanup(cache.storage, db_path)


def test_credential_lookup():
    db_path = _tmp_db()
    world = _World(devices=1)
    credential = {"id": "urn:uuid:guest-42", "door": "4B", "valid_until": 1767225600}
    world.revoke(1, fingerprint_credential(credential))
    cache = _make_cache(LedgerEventSource(world.ledger), db_path)

    try:
        asyncio.run(cache.initialize())
        reordered = {"valid_until": 1767225600, "door": "4B", "id": "urn:uuid:guest-42"}
        assert cache.is_credential_revoked(1, reordered)
        assert not cache.is_credential_revoked(2, reordered)
        assert not cache.is_credential_revoked(1, {**credential, "door": "4C"})
        assert not cache.is_credential_revoked(1, {"bad": object()})
        assert not cache.is_revoked(1, "0x1234")
        assert not cache.is_revoked(1, None)
        _ok("test_credential_lookup")
    finally:
        _cleanup(cache.storage, db_path)


class _SlowSource(LedgerEventSource):
    """Ledger source whose log queries take a while."""

    def __init__(self, ledger: Ledger, delay: float = 0.01):
        super().__init__(ledger)
        self.delay = delay

    async def query(self, from_position, to_position, device_id=None):
        await asyncio.sleep(self.delay)
        return await super().query(from_position, to_position, device_id)


def test_force_resync_during_reconciliation():
    """A reset never interleaves with a reconciliation pass already in flight."""
    db_path = _tmp_db()
    world = _World(devices=1)
    for _ in range(40):
        world.revoke(1)
    cache = _make_cache(_SlowSource(world.ledger), db_path, window_size=10)

    async def _run():
        await cache.initialize()
        for _ in range(40):
            world.revoke(1)

        pending = asyncio.create_task(cache.reconcile())
        await asyncio.sleep(0.025)
        rebuilt = await cache.force_resync()
        await pending

        assert rebuilt == 80
        assert cache.revoked_count(1) == 80
        assert cache.revoked_fingerprints(1) == world.registry.revoked_fingerprints(1)
        assert cache.last_checkpoint == world.ledger.current_position()
        assert cache.storage.export_snapshot().mirror[1] == cache.revoked_fingerprints(1)

        # Nothing left to reconcile once the rebuild completed
        assert await cache.reconcile() == 0
        report = await cache.health()
        assert report.healthy and report.behind == 0

    try:
        asyncio.run(_run())
        assert cache.state == CacheState.SYNCING
        _ok("test_force_resync_during_reconciliation")
    finally:
        _cleanup(cache.storage, db_path)


def test_stop_closes_owned_storage_only():
    db_path = _tmp_db()
    injected_path = _tmp_db()
    world = _World()
    first, second = world.revoke(1), world.revoke(2)

    config = SyncConfig(db_path=db_path, reconcile_interval=0, resubscribe_delay=60.0)
    cache = RevocationCache(LedgerEventSource(world.ledger), config=config)
    injected = _make_cache(LedgerEventSource(world.ledger), injected_path)

    async def _run():
        owned = cache.storage
        await cache.start()
        await cache.stop()
        assert cache.storage is None
        try:
            owned.conn.execute("SELECT 1")
            assert False, "Owned storage should be closed by stop()"
        except sqlite3.ProgrammingError:
            pass
        # Lookups keep answering from memory
        assert cache.is_revoked(1, first) and cache.is_revoked(2, second)

        third = world.revoke(3)
        await cache.start()
        assert cache.storage is not None
        assert cache.revoked_count(1) + cache.revoked_count(2) + cache.revoked_count(3) == 3
        assert cache.is_revoked(3, third)
        await cache.stop()
        await cache.stop()

        await injected.start()
        await injected.stop()
        assert injected.storage.conn.execute("SELECT 1").fetchone()[0] == 1

    try:
        asyncio.run(_run())
        _ok("test_stop_closes_owned_storage_only")
    finally:
        _cleanup(injected.storage, injected_path)
        try:
            os.unlink(db_path)
        except Exception:
            pass


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    print("=" * 60)
    print("lockreg Cache Tests")
    print("=" * 60)

    tests = [
        test_initialize_replays_history_in_windows,
        test_realtime_updates_and_checkpoint,
        test_cache_convergence_after_missed_notifications,
        test_scenario_e_disconnect_and_force_resync,
        test_duplicates_are_skipped,
        test_failed_window_keeps_stale_mirror_available,
        test_health_never_raises,
        test_periodic_reconciliation,
        test_stop_is_safe_before_initialize_and_twice,
        test_restart_resumes_from_checkpoint,
        test_malformed_realtime_notifications_are_skipped,
        test_malformed_history_aborts_reconciliation,
        test_credential_lookup,
        test_force_resync_during_reconciliation,
        test_stop_closes_owned_storage_only,
    ]

    for t in tests:
        try:
            t()
        except Exception as e:
            _fail(t.__name__, e)

    print("=" * 60)
    if _FAIL == 0:
        print(f"ALL {_PASS} TESTS PASSED")
    else:
        print(f"{_PASS} passed, {_FAIL} FAILED")
        sys.exit(1)
    print("=" * 60)
