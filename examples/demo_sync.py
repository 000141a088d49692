#!/usr/bin/env python3
"""
lockreg Sync Demo — A lock keeps answering while its uplink flaps

Flow:
  1. Three locks are registered; lock 3 has 50 revoked credentials
  2. A RevocationCache replays history and subscribes for updates
  3. A live revocation arrives through the subscription
  4. The uplink drops; 10 more revocations happen while disconnected
  5. Lookups still answer (stale); health reports the gap
  6. force_resync() rebuilds the mirror: exactly 60 for lock 3
  7. The cache file is left in examples/output/ for the CLI

Run:
    python examples/demo_sync.py
    python -m tools.lockreg_cli view examples/output/lock_cache.db
"""

import asyncio
import logging
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core import DeviceRegistry, Ledger, generate_device_key, sign_fingerprint
from lockreg_sync import CacheStorage, LedgerEventSource, RevocationCache, SyncConfig


def print_header(text: str, char: str = "━", width: int = 72) -> None:
    print(f"\n{char * width}")
    print(f"  {text}")
    print(f"{char * width}")


def print_health(report) -> None:
    status = "healthy" if report.healthy else "UNHEALTHY"
    print(f"  health: {status} | head {report.current_position} | "
          f"checkpoint {report.last_checkpoint} | behind {report.behind} | "
          f"listening {report.listening}")


class Building:
    """Registry plus the keys of its locks."""

    def __init__(self, locks: int):
        self.ledger = Ledger()
        self.owner = generate_device_key().address
        self.registry = DeviceRegistry(self.ledger, root_admin=generate_device_key().address)
        self.keys = {}
        for _ in range(locks):
            key = generate_device_key()
            self.keys[self.registry.register(self.owner, key.address)] = key
        self._serial = 0

    def revoke(self, device_id: int) -> str:
        self._serial += 1
        fp = "0x" + self._serial.to_bytes(32, "big").hex()
        self.registry.revoke(
            self.owner, device_id, fp, sign_fingerprint(self.keys[device_id].key, fp)
        )
        return fp


async def run(db_path: str) -> None:
    building = Building(locks=3)
    for _ in range(50):
        building.revoke(3)

    source = LedgerEventSource(building.ledger)
    config = SyncConfig(
        db_path=db_path,
        window_size=16,
        reconcile_interval=0,
        health_threshold=5,
        resubscribe_delay=30.0,
    )
    cache = RevocationCache(source, CacheStorage(db_path), config)

    print_header("1-2. Replay history")
    await cache.start()
    await asyncio.sleep(0.05)
    print(f"  lock 3 revoked credentials: {cache.revoked_count(3)}")
    print_health(await cache.health())

    print_header("3. Live revocation", "─")
    fp = building.revoke(1)
    await asyncio.sleep(0.05)
    print(f"  lock 1 sees {fp[:18]}... revoked: {cache.is_revoked(1, fp)}")

    print_header("4-5. Uplink drops, 10 revocations missed", "─")
    source.disconnect()
    await asyncio.sleep(0.05)
    missed = [building.revoke(3) for _ in range(10)]
    print(f"  lock 3 revoked credentials: {cache.revoked_count(3)} "
          f"(registry: {building.registry.get_revoked_count(3)})")
    print(f"  last missed credential revoked in cache: {cache.is_revoked(3, missed[-1])}")
    print_health(await cache.health())

    print_header("6. Force resync", "─")
    await cache.force_resync()
    await asyncio.sleep(0.05)
    print(f"  lock 3 revoked credentials: {cache.revoked_count(3)}")
    print_health(await cache.health())

    stats = cache.stats()
    print(f"  stats: {stats.devices} devices, {stats.fingerprints} fingerprints, "
          f"{stats.realtime_additions} real-time, {stats.batch_additions} batch, "
          f"{stats.duplicates_skipped} duplicates skipped")

    await cache.stop()
    cache.storage.close()


def main():
    logging.basicConfig(level=logging.INFO, format="  · %(name)s: %(message)s")

    output_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), "output")
    os.makedirs(output_dir, exist_ok=True)
    db_path = os.path.join(output_dir, "lock_cache.db")
    if os.path.exists(db_path):
        os.unlink(db_path)

    print_header("lockreg Sync Demo")
    asyncio.run(run(db_path))

    print(f"\n  Cache file: {db_path}")
    print(f"  View with CLI: python -m tools.lockreg_cli view {db_path}")


if __name__ == "__main__":
    main()
