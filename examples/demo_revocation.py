#!/usr/bin/env python3
"""
lockreg Revocation Demo — A hotel lock revokes a guest credential

Walks through the registry life of one lock:
  1. Front desk registers the lock with the key generated on the device
  2. A guest checks out early; the desk revokes the guest's credential,
     authorised by the lock's own signature
  3. An attacker replays the revocation with a different key
  4. Maintenance window: the administrator pauses the registry
  5. Every call is submitted as a transaction and its receipt printed

Run:
    python examples/demo_revocation.py

Requirements:
    pip install pydantic eth-account eth-utils jcs

No network: the registry runs on the in-process Ledger.
"""

import logging
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core import (
    DeviceRegistry,
    Ledger,
    Receipt,
    fingerprint_credential,
    generate_device_key,
    sign_fingerprint,
)


# ============================================================
# Display helpers
# ============================================================

def print_header(text: str, char: str = "━", width: int = 72) -> None:
    print(f"\n{char * width}")
    print(f"  {text}")
    print(f"{char * width}")


def print_receipt(receipt: Receipt) -> None:
    if receipt.success:
        events = ", ".join(n.type.value for n in receipt.notifications) or "no events"
        print(f"  ✓ {receipt.operation:<12} block {receipt.position:<3} {events}")
    else:
        print(f"  ✗ {receipt.operation:<12} {receipt.error}: {receipt.reason}")


# ============================================================
# Main
# ============================================================

def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    ledger = Ledger()
    admin = generate_device_key()
    front_desk = generate_device_key()
    registry = DeviceRegistry(ledger, root_admin=admin.address)

    lock = generate_device_key()      # generated inside the lock, key never leaves it
    attacker = generate_device_key()

    credential = {
        "id": "urn:uuid:7f1c0d2e-guest-room-412",
        "holder": "guest:K.Tanaka",
        "room": "412",
        "valid_from": "2026-10-17T15:00:00Z",
        "valid_until": "2026-10-21T11:00:00Z",
    }
    fingerprint = fingerprint_credential(credential)

    print_header("lockreg Revocation Demo — Room 412")
    print(f"  Administrator: {admin.address}")
    print(f"  Front desk:    {front_desk.address}")
    print(f"  Lock key:      {lock.address}")
    print(f"  Credential:    {fingerprint}")

    # --- 1. Register ---
    print_header("1. Register the lock", "─")
    receipt = ledger.submit("register", [lock.address], caller=front_desk.address)
    print_receipt(receipt)
    device_id = receipt.result
    info = registry.get_device_info(device_id)
    print(f"  device {device_id}: owner {info.owner}, bound key {info.bound_key}")

    # --- 2. Revoke ---
    print_header("2. Early checkout: revoke the guest credential", "─")
    signature = sign_fingerprint(lock.key, fingerprint)
    print_receipt(ledger.submit(
        "revoke", [device_id, fingerprint, signature], caller=front_desk.address,
    ))
    print(f"  is_revoked: {registry.is_revoked(device_id, fingerprint)} | "
          f"revoked count: {registry.get_revoked_count(device_id)}")

    # Revoking twice is a conflict, not a silent success
    print_receipt(ledger.submit(
        "revoke", [device_id, fingerprint, signature], caller=front_desk.address,
    ))

    # --- 3. Forged signature ---
    print_header("3. Forged authorisation", "─")
    other = fingerprint_credential({**credential, "holder": "guest:J.Doe"})
    forged = sign_fingerprint(attacker.key, other)
    print_receipt(ledger.submit(
        "revoke", [device_id, other, forged], caller=front_desk.address,
    ))
    print(f"  is_revoked: {registry.is_revoked(device_id, other)}")

    # --- 4. Pause ---
    print_header("4. Maintenance window", "─")
    print_receipt(ledger.submit("pause", [], caller=front_desk.address))
    print_receipt(ledger.submit("pause", [], caller=admin.address))
    print_receipt(ledger.submit(
        "register", [generate_device_key().address], caller=front_desk.address,
    ))
    print_receipt(ledger.submit("unpause", [], caller=admin.address))
    print_receipt(ledger.submit(
        "register", [generate_device_key().address], caller=front_desk.address,
    ))

    # --- Summary ---
    print_header("Ledger")
    for note in ledger.notifications:
        print(f"  [{note.position:>2}.{note.log_index}] {note.type.value:<21} device {note.device_id}")
    print(f"\n  Devices: {registry.total_devices()} | Head: block {ledger.current_position()}")


if __name__ == "__main__":
    main()
