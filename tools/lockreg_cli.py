#!/usr/bin/env python3
"""
lockreg CLI — Inspect a lock's revocation cache file.

Usage:
    python -m tools.lockreg_cli view <cache.db>
    python -m tools.lockreg_cli view <cache.db> --device 3
    python -m tools.lockreg_cli check <cache.db> <device_id> <fingerprint>
    python -m tools.lockreg_cli export <cache.db> [-o snapshot.json]

Commands:
    view    — Render the mirrored revocations per device
    check   — Answer "is this credential revoked?" from the cache
    export  — Write the mirror and checkpoint as JSON
"""

import argparse
import logging
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core.crypto import normalize_fingerprint
from lockreg_sync.storage import CacheStorage


def fmt_fp(fp: str, length: int = 18) -> str:
    """Abbreviate a fingerprint for display."""
    return f"{fp[:length]}..."


# ============================================================
# View command
# ============================================================

def cmd_view(storage: CacheStorage, device_id: int | None = None, full: bool = False) -> None:
    """Render the mirror in human-readable format."""
    snapshot = storage.export_snapshot()
    mirror = snapshot.mirror
    if device_id is not None:
        mirror = {device_id: mirror.get(device_id, [])}

    total = sum(len(fps) for fps in snapshot.mirror.values())
    print(f"━━━ Revocation cache: {storage.db_path} ━━━")
    print(f"Checkpoint: position {snapshot.last_checkpoint} | "
          f"Devices: {len(snapshot.mirror)} | Revoked credentials: {total}")

    if not any(mirror.values()):
        print("\n  (no revocations)")
        return

    for dev, fps in mirror.items():
        print(f"\n[device {dev}] {len(fps)} revoked")
        for fp in storage.device_fingerprints(dev):
            print(f"    ✗ {fp if full else fmt_fp(fp)}")


# ============================================================
# Check command
# ============================================================

def cmd_check(storage: CacheStorage, device_id: int, fingerprint: str) -> bool:
    """Print the verdict for one credential. Returns True if revoked."""
    try:
        fp = normalize_fingerprint(fingerprint)
    except (TypeError, ValueError) as e:
        print(f"  ERROR: {e}")
        sys.exit(2)

    revoked = fp in storage.device_fingerprints(device_id)
    checkpoint = storage.load_checkpoint()
    if revoked:
        print(f"  ✗ REVOKED   device {device_id} {fmt_fp(fp)}")
    else:
        print(f"  ✓ NOT REVOKED (as of position {checkpoint})  "
              f"device {device_id} {fmt_fp(fp)}")
    return revoked


# ============================================================
# Export command
# ============================================================

def cmd_export(storage: CacheStorage, output: str | None = None) -> None:
    """Write the snapshot as JSON to output, or stdout."""
    data = storage.export_snapshot().model_dump_json(indent=2)
    if output is None:
        print(data)
        return
    with open(output, "w", encoding="utf-8") as f:
        f.write(data)
    print(f"  Snapshot written to {output}")


# ============================================================
# Main
# ============================================================

def main():
    parser = argparse.ArgumentParser(
        description="lockreg CLI — Revocation cache inspector",
        prog="python -m tools.lockreg_cli",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    view = sub.add_parser("view", help="Render cached revocations")
    view.add_argument("cache_file", help="Path to the cache SQLite file")
    view.add_argument("--device", "-d", type=int, help="Only show this device")
    view.add_argument("--full", "-f", action="store_true",
                      help="Print full fingerprints")

    check = sub.add_parser("check", help="Look up one credential fingerprint")
    check.add_argument("cache_file", help="Path to the cache SQLite file")
    check.add_argument("device_id", type=int)
    check.add_argument("fingerprint", help="32-byte hex fingerprint")

    export = sub.add_parser("export", help="Write the cache as JSON")
    export.add_argument("cache_file", help="Path to the cache SQLite file")
    export.add_argument("--output", "-o", help="Output file (default: stdout)")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not os.path.exists(args.cache_file):
        print(f"  ERROR: File not found: {args.cache_file}")
        sys.exit(1)

    with CacheStorage(args.cache_file) as storage:
        if args.command == "view":
            cmd_view(storage, device_id=args.device, full=args.full)
        elif args.command == "check":
            revoked = cmd_check(storage, args.device_id, args.fingerprint)
            sys.exit(1 if revoked else 0)
        elif args.command == "export":
            cmd_export(storage, output=args.output)


if __name__ == "__main__":
    main()
