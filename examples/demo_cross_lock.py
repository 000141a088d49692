#!/usr/bin/env python3
"""
lockreg Cross-Lock Demo — Signatures are bound to one device

Flow:
  1. A property manager registers two locks (front door, garage)
  2. The front door signs a revocation; the same signature is replayed
     against the garage and rejected
  3. The building is sold: ownership moves to the new manager, with the
     lock itself co-signing the hand-over
  4. The previous manager can no longer revoke
  5. The garage lock is destroyed; the administrator recovers it with an
     emergency transfer

Run:
    python examples/demo_cross_lock.py
"""

import logging
import os
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core import (
    AuthenticationFailed,
    DeviceRegistry,
    Ledger,
    NotOwner,
    RegistryConfig,
    generate_device_key,
    sign_fingerprint,
    sign_message,
)


def print_header(text: str, char: str = "━", width: int = 72) -> None:
    print(f"\n{char * width}")
    print(f"  {text}")
    print(f"{char * width}")


def main():
    logging.basicConfig(level=logging.INFO, format="  · %(message)s")

    ledger = Ledger()
    admin = generate_device_key().address
    registry = DeviceRegistry(
        ledger, root_admin=admin,
        config=RegistryConfig(require_device_auth_for_transfer=True),
    )

    old_manager = generate_device_key().address
    new_manager = generate_device_key().address
    front_door, garage = generate_device_key(), generate_device_key()

    print_header("lockreg Cross-Lock Demo")

    # --- 1 ---
    print_header("1. Register two locks", "─")
    front_id = registry.register(old_manager, front_door.address)
    garage_id = registry.register(old_manager, garage.address)

    # --- 2 ---
    print_header("2. Replay a front-door signature against the garage", "─")
    fp = "0x" + "aa" * 32
    sig = sign_fingerprint(front_door.key, fp)
    registry.revoke(old_manager, front_id, fp, sig)
    try:
        registry.revoke(old_manager, garage_id, fp, sig)
    except AuthenticationFailed as e:
        print(f"  ✗ rejected: {str(e).split(' (')[0]}")
    print(f"  front door revoked: {registry.is_revoked(front_id, fp)} | "
          f"garage revoked: {registry.is_revoked(garage_id, fp)}")

    # --- 3 ---
    print_header("3. Sale: transfer with the lock co-signing", "─")
    handover = f"transfer device {front_id} to {new_manager}".encode()
    registry.transfer_ownership(
        old_manager, front_id, new_manager,
        handover, sign_message(front_door.key, handover),
    )
    print(f"  owner is now {registry.get_owner(front_id)}")

    # --- 4 ---
    print_header("4. Previous manager tries to revoke", "─")
    fp2 = "0x" + "bb" * 32
    sig2 = sign_fingerprint(front_door.key, fp2)
    try:
        registry.revoke(old_manager, front_id, fp2, sig2)
    except NotOwner as e:
        print(f"  ✗ rejected: {e}")
    registry.revoke(new_manager, front_id, fp2, sig2)
    print(f"  new manager revoked {fp2[:18]}...: {registry.is_revoked(front_id, fp2)}")

    # --- 5 ---
    print_header("5. Garage lock destroyed: emergency recovery", "─")
    registry.emergency_transfer_ownership(admin, garage_id, new_manager)
    print(f"  garage owner: {registry.get_owner(garage_id)}")
    print(f"  garage bound key unchanged: "
          f"{registry.verify_bound_key(garage_id, garage.address)}")


if __name__ == "__main__":
    main()
