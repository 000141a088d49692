"""
lockreg_sync/sources.py — Where the cache reads revocations from.

An event source offers three things, all async:

    current_position()             latest position of the log
    query(from, to, device_id)     historical CredentialRevoked notifications
    subscribe()                    a Subscription to new ones

A Subscription promises to deliver every revocation whose position is
greater than its start_position (it may also repeat older ones).  The
cache relies on that promise to decide when the real-time path may
advance the checkpoint.

Implementations:
    LedgerEventSource   the in-process Ledger (tests, demos, simulators)
    Web3EventSource     a deployed registry contract on an EVM chain;
                        subscription by block polling
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional, Protocol

from eth_utils import keccak
from web3 import Web3

from lockreg_core.ledger import Ledger
from lockreg_core.model import Notification, NotificationType

from .errors import MalformedNotification, SourceUnavailable

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Subscription(Protocol):
    start_position: int

    def __aiter__(self) -> AsyncIterator[Notification]: ...

    async def close(self) -> None: ...


class EventSource(Protocol):
    async def current_position(self) -> int: ...

    async def query(
        self,
        from_position: int,
        to_position: int,
        device_id: Optional[int] = None,
    ) -> List[Notification]: ...

    async def subscribe(self) -> Subscription: ...


# ---------------------------------------------------------------------------
# In-process ledger
# ---------------------------------------------------------------------------

_CLOSED = object()


class LedgerSubscription:
    """Queue-backed subscription to a Ledger."""

    def __init__(self, ledger: Ledger):
        self._ledger = ledger
        self._queue = ledger.subscribe()
        self.start_position = ledger.current_position()
        self.closed = False

    def __aiter__(self) -> "LedgerSubscription":
        return self

    async def __anext__(self) -> Notification:
        while True:
            if self.closed:
                raise StopAsyncIteration
            item = await self._queue.get()
            if item is _CLOSED:
                await self.close()
                raise StopAsyncIteration
            if item.type == NotificationType.CREDENTIAL_REVOKED:
                return item

    def drop(self) -> None:
        """End the stream as a lost connection would."""
        self._queue.put_nowait(_CLOSED)

    async def close(self) -> None:
        self.closed = True
        self._ledger.unsubscribe(self._queue)


class LedgerEventSource:
    """Event source over an in-process Ledger."""

    def __init__(self, ledger: Ledger):
        self._ledger = ledger
        self._subscriptions: List[LedgerSubscription] = []

    async def current_position(self) -> int:
        return self._ledger.current_position()

    async def query(
        self,
        from_position: int,
        to_position: int,
        device_id: Optional[int] = None,
    ) -> List[Notification]:
        return self._ledger.query(
            NotificationType.CREDENTIAL_REVOKED,
            device_id=device_id,
            from_position=from_position,
            to_position=to_position,
        )

    async def subscribe(self) -> LedgerSubscription:
        subscription = LedgerSubscription(self._ledger)
        self._subscriptions = [s for s in self._subscriptions if not s.closed]
        self._subscriptions.append(subscription)
        return subscription

    def disconnect(self) -> None:
        """Drop every open subscription (simulates a lost connection)."""
        for subscription in self._subscriptions:
            if not subscription.closed:
                subscription.drop()
        _log.info("ledger event source: subscriptions dropped")


# ---------------------------------------------------------------------------
# EVM chain via web3
# ---------------------------------------------------------------------------

CREDENTIAL_REVOKED_SIGNATURE = "CredentialRevoked(uint256,bytes32,address)"
CREDENTIAL_REVOKED_TOPIC = "0x" + keccak(text=CREDENTIAL_REVOKED_SIGNATURE).hex()

# Event ABI of the deployed registry contract
REGISTRY_EVENTS_ABI = [
    {
        "anonymous": False,
        "type": "event",
        "name": "DeviceRegistered",
        "inputs": [
            {"indexed": True, "name": "deviceId", "type": "uint256"},
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": False, "name": "boundKey", "type": "address"},
        ],
    },
    {
        "anonymous": False,
        "type": "event",
        "name": "CredentialRevoked",
        "inputs": [
            {"indexed": True, "name": "deviceId", "type": "uint256"},
            {"indexed": True, "name": "fingerprint", "type": "bytes32"},
            {"indexed": True, "name": "owner", "type": "address"},
        ],
    },
    {
        "anonymous": False,
        "type": "event",
        "name": "OwnershipTransferred",
        "inputs": [
            {"indexed": True, "name": "deviceId", "type": "uint256"},
            {"indexed": True, "name": "previousOwner", "type": "address"},
            {"indexed": True, "name": "newOwner", "type": "address"},
        ],
    },
]


def _device_topic(device_id: int) -> str:
    return "0x" + device_id.to_bytes(32, "big").hex()


class Web3Subscription:
    """Polls for new blocks and yields the revocations they contain."""

    def __init__(self, source: "Web3EventSource", start_position: int):
        self._source = source
        self.start_position = start_position
        self._last = start_position
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Notification]:
        return self._poll()

    async def _poll(self) -> AsyncIterator[Notification]:
        while not self._closed:
            await asyncio.sleep(self._source.poll_interval)
            head = await self._source.current_position()
            if head <= self._last:
                continue
            for note in await self._source.query(self._last + 1, head):
                yield note
            self._last = head

    async def close(self) -> None:
        self._closed = True


class Web3EventSource:
    """Event source reading CredentialRevoked logs from a deployed contract.

    web3 calls are blocking; they run in worker threads so the cache's
    event loop keeps serving lookups.

    Args:
        w3:            Connected Web3 instance.
        contract:      Contract object built with REGISTRY_EVENTS_ABI.
        poll_interval: Seconds between head checks while subscribed.
    """

    def __init__(self, w3: Any, contract: Any, poll_interval: float = 2.0):
        self._w3 = w3
        self._contract = contract
        self.poll_interval = poll_interval

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        contract_address: str,
        poll_interval: float = 2.0,
    ) -> "Web3EventSource":
        w3 = Web3(Web3.HTTPProvider(rpc_url))
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=REGISTRY_EVENTS_ABI,
        )
        return cls(w3, contract, poll_interval=poll_interval)

    async def current_position(self) -> int:
        try:
            return int(await asyncio.to_thread(lambda: self._w3.eth.block_number))
        except Exception as exc:
            raise SourceUnavailable(f"block number query failed: {exc}") from exc

    async def query(
        self,
        from_position: int,
        to_position: int,
        device_id: Optional[int] = None,
    ) -> List[Notification]:
        topics = [CREDENTIAL_REVOKED_TOPIC]
        if device_id is not None:
            topics.append(_device_topic(device_id))
        params = {
            "address": self._contract.address,
            "fromBlock": from_position,
            "toBlock": to_position,
            "topics": topics,
        }
        try:
            logs = await asyncio.to_thread(self._w3.eth.get_logs, params)
        except Exception as exc:
            raise SourceUnavailable(
                f"log query {from_position}-{to_position} failed: {exc}"
            ) from exc

        event = self._contract.events.CredentialRevoked()
        notes = [self._decode(event, log) for log in logs]
        return sorted(notes, key=lambda n: n.order_key)

    async def subscribe(self) -> Web3Subscription:
        return Web3Subscription(self, await self.current_position())

    @staticmethod
    def _decode(event: Any, log: Any) -> Notification:
        try:
            decoded = event.process_log(log)
            args = decoded["args"]
            return Notification(
                type=NotificationType.CREDENTIAL_REVOKED,
                position=int(decoded["blockNumber"]),
                log_index=int(decoded["logIndex"]),
                device_id=int(args["deviceId"]),
                fingerprint="0x" + bytes(args["fingerprint"]).hex(),
                owner=Web3.to_checksum_address(args["owner"]),
            )
        except Exception as exc:
            raise MalformedNotification(log, str(exc)) from exc
