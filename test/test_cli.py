"""
test/test_cli.py — Tests for tools/lockreg_cli.py

Run:  python test/test_cli.py
"""

import json
import os
import sys
import tempfile

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_sync import CacheStorage
from tools.lockreg_cli import cmd_check, cmd_export, cmd_view


FP_AA = "0x" + "aa" * 32
FP_BB = "0x" + "bb" * 32


def _populated_storage(db_path: str) -> CacheStorage:
    storage = CacheStorage(db_path)
    storage.save([(1, FP_AA, 4), (2, FP_BB, 5), (1, FP_BB, 6)], checkpoint=6)
    return storage


def test_check_and_export():
    tmp = tempfile.mkdtemp()
    db_path = os.path.join(tmp, "cache.db")
    out_path = os.path.join(tmp, "snapshot.json")
    storage = _populated_storage(db_path)
    try:
        assert cmd_check(storage, 1, FP_AA) is True
        assert cmd_check(storage, 1, "0x" + "AA" * 32) is True
        assert cmd_check(storage, 2, FP_AA) is False

        cmd_export(storage, output=out_path)
        with open(out_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        assert data["last_checkpoint"] == 6
        assert data["mirror"]["1"] == [FP_AA, FP_BB]
        assert data["mirror"]["2"] == [FP_BB]

        # Rendering must not fail on populated or filtered views
        cmd_view(storage)
        cmd_view(storage, device_id=9)
        print("  PASS: test_check_and_export")
    finally:
        storage.close()
        os.unlink(db_path)
        if os.path.exists(out_path):
            os.unlink(out_path)
        os.rmdir(tmp)


def test_storage_save_is_idempotent():
    tmp = tempfile.mkdtemp()
    db_path = os.path.join(tmp, "cache.db")
    storage = _populated_storage(db_path)
    try:
        storage.save([(1, FP_AA, 9)], checkpoint=9)
        assert storage.device_fingerprints(1) == [FP_AA, FP_BB]
        assert storage.load_checkpoint() == 9
        assert storage.load_mirror() == {1: {FP_AA, FP_BB}, 2: {FP_BB}}

        storage.clear()
        assert storage.load_mirror() == {}
        assert storage.load_checkpoint() == 0
        print("  PASS: test_storage_save_is_idempotent")
    finally:
        storage.close()
        os.unlink(db_path)
        os.rmdir(tmp)


if __name__ == "__main__":
    test_check_and_export()
    test_storage_save_is_idempotent()
    print("ALL TESTS PASSED")
