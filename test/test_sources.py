"""
test/test_sources.py — Event sources (in-process ledger and web3)

Web3 access is replaced with unittest.mock objects; no node is needed.

Run:  python test/test_sources.py
"""

import asyncio
import os
import sys
import traceback
from unittest import mock

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lockreg_core import (
    DeviceRegistry,
    Ledger,
    NotificationType,
    generate_device_key,
    sign_fingerprint,
)
from lockreg_sync import (
    CREDENTIAL_REVOKED_TOPIC,
    LedgerEventSource,
    MalformedNotification,
    SourceUnavailable,
    Web3EventSource,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PASS = 0
_FAIL = 0

_OWNER = "0x" + "11" * 20
_CONTRACT = "0x" + "ab" * 20


def _ok(name: str) -> None:
    global _PASS
    _PASS += 1
    print(f"  PASS: {name}")


def _fail(name: str, err: Exception) -> None:
    global _FAIL
    _FAIL += 1
    print(f"  FAIL: {name} — {err}")
    traceback.print_exc()


class _FakeEth:
    """Stands in for w3.eth: a block height and a list of decoded logs."""

    def __init__(self, block_number: int = 10):
        self.block_number = block_number
        self.logs = []
        self.calls = []
        self.fail = False

    def get_logs(self, params):
        self.calls.append(params)
        if self.fail:
            raise ConnectionError("rpc endpoint refused connection")
        return [
            log for log in self.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]


def _log_entry(block: int, index: int, device_id: int, byte: int) -> dict:
    return {
        "blockNumber": block,
        "logIndex": index,
        "args": {
            "deviceId": device_id,
            "fingerprint": bytes([byte]) * 32,
            "owner": _OWNER,
        },
    }


def _web3_source(eth: _FakeEth, poll_interval: float = 0.0) -> Web3EventSource:
    w3 = mock.Mock()
    w3.eth = eth
    contract = mock.MagicMock()
    contract.address = _CONTRACT
    # Logs in _FakeEth are already decoded
    contract.events.CredentialRevoked.return_value.process_log.side_effect = lambda log: log
    return Web3EventSource(w3, contract, poll_interval=poll_interval)


# ---------------------------------------------------------------------------
# Ledger source
# ---------------------------------------------------------------------------

def test_ledger_source_query_returns_revocations_only():
    ledger = Ledger()
    admin, owner = generate_device_key().address, generate_device_key().address
    registry = DeviceRegistry(ledger, root_admin=admin)
    key = generate_device_key()
    registry.register(owner, key.address)
    fp = "0x" + "aa" * 32
    registry.revoke(owner, 1, fp, sign_fingerprint(key.key, fp))
    registry.transfer_ownership(owner, 1, admin)

    source = LedgerEventSource(ledger)

    async def _run():
        assert await source.current_position() == 3
        notes = await source.query(1, 3)
        assert [n.type for n in notes] == [NotificationType.CREDENTIAL_REVOKED]
        assert await source.query(1, 3, device_id=2) == []
        assert await source.query(3, 3) == []

    asyncio.run(_run())
    _ok("test_ledger_source_query_returns_revocations_only")


def test_ledger_subscription_and_disconnect():
    ledger = Ledger()
    admin, owner = generate_device_key().address, generate_device_key().address
    registry = DeviceRegistry(ledger, root_admin=admin)
    key = generate_device_key()
    registry.register(owner, key.address)
    source = LedgerEventSource(ledger)

    async def _run():
        subscription = await source.subscribe()
        assert subscription.start_position == 1

        registry.register(owner, generate_device_key().address)
        fp = "0x" + "bb" * 32
        registry.revoke(owner, 1, fp, sign_fingerprint(key.key, fp))
        source.disconnect()

        received = [note async for note in subscription]
        assert [n.fingerprint for n in received] == [fp]
        assert received[0].position == 3
        assert ledger.subscriber_count == 0

    asyncio.run(_run())
    _ok("test_ledger_subscription_and_disconnect")


# ---------------------------------------------------------------------------
# Web3 source
# ---------------------------------------------------------------------------

def test_web3_topic_and_connect():
    assert CREDENTIAL_REVOKED_TOPIC.startswith("0x")
    assert len(CREDENTIAL_REVOKED_TOPIC) == 66

    source = Web3EventSource.connect("http://127.0.0.1:8545", _CONTRACT, poll_interval=1.5)
    assert source.poll_interval == 1.5
    assert source._contract.address.lower() == _CONTRACT
    _ok("test_web3_topic_and_connect")


def test_web3_query_decodes_and_orders():
    eth = _FakeEth(block_number=42)
    eth.logs = [_log_entry(12, 1, 3, 0xBB), _log_entry(12, 0, 3, 0xAA), _log_entry(40, 0, 5, 0xCC)]
    source = _web3_source(eth)

    async def _run():
        assert await source.current_position() == 42
        notes = await source.query(10, 20, device_id=3)
        assert [n.order_key for n in notes] == [(12, 0), (12, 1)]
        assert notes[0].fingerprint == "0x" + "aa" * 32
        assert notes[0].device_id == 3
        assert notes[0].type == NotificationType.CREDENTIAL_REVOKED

        params = eth.calls[-1]
        assert params["address"] == _CONTRACT
        assert (params["fromBlock"], params["toBlock"]) == (10, 20)
        assert params["topics"][0] == CREDENTIAL_REVOKED_TOPIC
        assert params["topics"][1] == "0x" + "00" * 31 + "03"

        await source.query(1, 42)
        assert len(eth.calls[-1]["topics"]) == 1

    asyncio.run(_run())
    _ok("test_web3_query_decodes_and_orders")


def test_web3_failures_are_typed():
    eth = _FakeEth()
    eth.logs = [_log_entry(5, 0, 1, 0xAA)]
    source = _web3_source(eth)

    async def _run():
        eth.fail = True
        try:
            await source.query(1, 10)
            assert False, "Should have raised SourceUnavailable"
        except SourceUnavailable as e:
            assert "refused" in str(e)

        eth.fail = False
        event = source._contract.events.CredentialRevoked.return_value
        event.process_log.side_effect = ValueError("log topics do not match ABI")
        try:
            await source.query(1, 10)
            assert False, "Should have raised MalformedNotification"
        except MalformedNotification as e:
            assert "ABI" in e.reason

    asyncio.run(_run())
    _ok("test_web3_failures_are_typed")


def test_web3_subscription_polls_new_blocks():
    eth = _FakeEth(block_number=10)
    eth.logs = [_log_entry(9, 0, 1, 0x01)]
    source = _web3_source(eth)

    async def _run():
        subscription = await source.subscribe()
        assert subscription.start_position == 10

        eth.logs.append(_log_entry(11, 0, 2, 0x02))
        eth.logs.append(_log_entry(12, 0, 2, 0x03))
        eth.block_number = 12

        stream = subscription.__aiter__()
        first = await asyncio.wait_for(stream.__anext__(), timeout=1)
        second = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert [first.position, second.position] == [11, 12]
        assert eth.calls[0]["fromBlock"] == 11

        await subscription.close()
        await stream.aclose()

    asyncio.run(_run())
    _ok("test_web3_subscription_polls_new_blocks")


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    print("=" * 60)
    print("lockreg Event Source Tests")
    print("=" * 60)

    tests = [
        test_ledger_source_query_returns_revocations_only,
        test_ledger_subscription_and_disconnect,
        test_web3_topic_and_connect,
        test_web3_query_decodes_and_orders,
        test_web3_failures_are_typed,
        test_web3_subscription_polls_new_blocks,
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
