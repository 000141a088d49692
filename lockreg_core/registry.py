"""
lockreg_core/registry.py — Device Registry contract

Binds lock devices to cryptographic identities and records credential
revocations.  Four concerns live here:

    Identity Registry      register(), device views
    Revocation Ledger      revoke(), batch_revoke(), is_revoked()
    Ownership Transfer     transfer_ownership(), emergency_transfer_ownership()
    Administration         pause(), unpause()

Every mutating method runs through Ledger.execute(), so each call is
atomic: it either mutates state and appends its notifications, or
raises and leaves no trace.  Guards are explicit, ordered checks at the
top of each operation:

    paused → device exists → caller is owner → input well-formed
           → signature authentic → quota → not already revoked

Cheap and decisive checks come first so a clearly unauthorized call
never pays for signature recovery.

Device ids come from a sequence owned by the registry that is not part
of the rolled-back snapshot: an id, once handed out, is never handed
out again.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .crypto import (
    BytesLike,
    fingerprint_bytes,
    is_zero_address,
    is_zero_fingerprint,
    normalize_address,
    normalize_fingerprint,
    to_bytes,
)
from .errors import (
    AlreadyRevoked,
    DeviceNotFound,
    EmptySignature,
    InvalidInput,
    InvalidKey,
    NotAdmin,
    NotOwner,
    QuotaExceeded,
    SameOwner,
    SystemPaused,
    ZeroFingerprint,
)
from .ledger import Ledger
from .model import DeviceRecord, NotificationType, RegistryConfig
from .verifier import authenticate, require_authentic

_log = logging.getLogger(__name__)


class DeviceRegistry:
    """The registry contract, deployed on a Ledger.

    Args:
        ledger:     Execution environment providing atomic calls and the
                    notification log.
        root_admin: Address allowed to pause/unpause and to perform
                    emergency ownership transfers.
        config:     Registry parameters (quota, transfer policy).
    """

    # Methods reachable through Ledger.submit()
    OPERATIONS = frozenset({
        "register",
        "revoke",
        "batch_revoke",
        "transfer_ownership",
        "emergency_transfer_ownership",
        "pause",
        "unpause",
    })

    def __init__(
        self,
        ledger: Ledger,
        root_admin: str,
        config: Optional[RegistryConfig] = None,
    ) -> None:
        self._ledger = ledger
        self._root_admin = self._identity(root_admin)
        self._config = config or RegistryConfig()

        self._devices: Dict[int, DeviceRecord] = {}
        self._revoked: Dict[int, Set[str]] = {}
        self._paused: bool = False

        # Sequence: not part of snapshot(), never rolled back
        self._next_device_id: int = 1

        ledger.deploy(self)

    # ------------------------------------------------------------------
    # Snapshot / restore (used by Ledger.execute)
    # ------------------------------------------------------------------

    def snapshot(self) -> Tuple[Dict[int, DeviceRecord], Dict[int, Set[str]], bool]:
        return (
            {k: r.model_copy() for k, r in self._devices.items()},
            {k: set(v) for k, v in self._revoked.items()},
            self._paused,
        )

    def restore(self, snapshot) -> None:
        self._devices, self._revoked, self._paused = snapshot

    # ------------------------------------------------------------------
    # Identity Registry
    # ------------------------------------------------------------------

    def register(self, caller: str, bound_key: BytesLike) -> int:
        """Register a device bound to bound_key. Returns the new device id."""
        return self._ledger.execute(self._register, caller, bound_key)

    def _register(self, caller: str, bound_key: BytesLike) -> int:
        self._require_not_paused()
        owner = self._identity(caller)
        key = self._bound_key(bound_key)

        device_id = self._next_device_id
        self._next_device_id += 1

        self._devices[device_id] = DeviceRecord(
            device_id=device_id,
            owner=owner,
            bound_key=key,
        )
        self._revoked[device_id] = set()
        self._ledger.emit(
            NotificationType.DEVICE_REGISTERED,
            device_id=device_id,
            owner=owner,
            bound_key=key,
        )
        _log.info("device %d registered by %s (key %s)", device_id, owner, key)
        return device_id

    def device_exists(self, device_id: int) -> bool:
        record = self._devices.get(device_id)
        return record is not None and record.exists

    def get_device_info(self, device_id: int) -> DeviceRecord:
        """Copy of the device record."""
        return self._require_device(device_id).model_copy()

    def get_owner(self, device_id: int) -> str:
        return self._require_device(device_id).owner

    def get_bound_key(self, device_id: int) -> str:
        return self._require_device(device_id).bound_key

    def verify_bound_key(self, device_id: int, key: str) -> bool:
        """True iff key is the device's bound verification key."""
        record = self._require_device(device_id)
        return isinstance(key, str) and key.lower() == record.bound_key.lower()

    def total_devices(self) -> int:
        return len(self._devices)

    # ------------------------------------------------------------------
    # Authentication Verifier
    # ------------------------------------------------------------------

    def authenticate(
        self,
        device_id: int,
        message: BytesLike,
        signature: BytesLike,
    ) -> bool:
        """True iff signature over message was produced by the device key."""
        record = self._require_device(device_id)
        try:
            payload = to_bytes(message)
        except (TypeError, ValueError):
            return False
        return authenticate(record.bound_key, payload, signature)

    # ------------------------------------------------------------------
    # Revocation Ledger
    # ------------------------------------------------------------------

    def revoke(
        self,
        caller: str,
        device_id: int,
        fingerprint: BytesLike,
        auth_signature: BytesLike,
    ) -> None:
        """Revoke one credential fingerprint for device_id."""
        self._ledger.execute(
            self._revoke, caller, device_id, fingerprint, auth_signature
        )

    def _revoke(
        self,
        caller: str,
        device_id: int,
        fingerprint: BytesLike,
        auth_signature: BytesLike,
    ) -> None:
        self._require_not_paused()
        record = self._require_device(device_id)
        self._require_owner(record, caller)
        fp, sig = self._revocation_input(device_id, fingerprint, auth_signature)
        require_authentic(record, fingerprint_bytes(fp), sig)

        if record.revoked_count >= self._config.max_revoked:
            raise QuotaExceeded(device_id, self._config.max_revoked)

        self._apply_revocation(record, fp)

    def batch_revoke(
        self,
        caller: str,
        device_id: int,
        fingerprints: Sequence[BytesLike],
        auth_signatures: Sequence[BytesLike],
    ) -> int:
        """Revoke several fingerprints in one all-or-nothing call.

        The quota is checked once, up front, against the post-batch
        count.  Each item is then validated and authenticated in order;
        any failure (including a duplicate inside the batch) rejects the
        whole call.

        Returns:
            Number of fingerprints revoked.
        """
        return self._ledger.execute(
            self._batch_revoke, caller, device_id, fingerprints, auth_signatures
        )

    def _batch_revoke(
        self,
        caller: str,
        device_id: int,
        fingerprints: Sequence[BytesLike],
        auth_signatures: Sequence[BytesLike],
    ) -> int:
        self._require_not_paused()
        record = self._require_device(device_id)
        self._require_owner(record, caller)

        fingerprints = list(fingerprints or [])
        auth_signatures = list(auth_signatures or [])
        if not fingerprints:
            raise InvalidInput("Batch must contain at least one fingerprint")
        if len(fingerprints) != len(auth_signatures):
            raise InvalidInput(
                f"Batch has {len(fingerprints)} fingerprints but "
                f"{len(auth_signatures)} signatures"
            )

        limit = self._config.max_revoked
        if record.revoked_count + len(fingerprints) > limit:
            raise QuotaExceeded(device_id, limit, requested=len(fingerprints))

        for fingerprint, auth_signature in zip(fingerprints, auth_signatures):
            fp, sig = self._revocation_input(device_id, fingerprint, auth_signature)
            require_authentic(record, fingerprint_bytes(fp), sig)
            self._apply_revocation(record, fp)

        return len(fingerprints)

    def is_revoked(self, device_id: int, fingerprint: BytesLike) -> bool:
        try:
            fp = normalize_fingerprint(fingerprint)
        except (TypeError, ValueError):
            return False
        return fp in self._revoked.get(device_id, ())

    def get_revoked_count(self, device_id: int) -> int:
        return self._require_device(device_id).revoked_count

    def _apply_revocation(self, record: DeviceRecord, fingerprint: str) -> None:
        revoked = self._revoked[record.device_id]
        if fingerprint in revoked:
            raise AlreadyRevoked(record.device_id, fingerprint)

        revoked.add(fingerprint)
        record.revoked_count += 1
        self._ledger.emit(
            NotificationType.CREDENTIAL_REVOKED,
            device_id=record.device_id,
            fingerprint=fingerprint,
            owner=record.owner,
        )
        _log.info("device %d: credential %s revoked", record.device_id, fingerprint)

    # ------------------------------------------------------------------
    # Ownership Transfer Protocol
    # ------------------------------------------------------------------

    def transfer_ownership(
        self,
        caller: str,
        device_id: int,
        new_owner: str,
        message: Optional[BytesLike] = None,
        auth_signature: Optional[BytesLike] = None,
    ) -> None:
        """Hand the device to new_owner.

        With message and auth_signature the transfer additionally proves
        physical device cooperation: the device key must have signed
        message.
        """
        self._ledger.execute(
            self._transfer_ownership,
            caller, device_id, new_owner, message, auth_signature,
        )

    def _transfer_ownership(
        self,
        caller: str,
        device_id: int,
        new_owner: str,
        message: Optional[BytesLike],
        auth_signature: Optional[BytesLike],
    ) -> None:
        self._require_not_paused()
        record = self._require_device(device_id)
        self._require_owner(record, caller)
        target = self._new_owner(record, new_owner)

        with_auth = message is not None or auth_signature is not None
        if with_auth or self._config.require_device_auth_for_transfer:
            payload, sig = self._transfer_auth_input(device_id, message, auth_signature)
            require_authentic(record, payload, sig)

        self._apply_transfer(record, target)

    def emergency_transfer_ownership(
        self,
        caller: str,
        device_id: int,
        new_owner: str,
    ) -> None:
        """Root-admin recovery path for lost or destroyed devices.

        Skips device-key authentication entirely.
        """
        self._ledger.execute(
            self._emergency_transfer_ownership, caller, device_id, new_owner
        )

    def _emergency_transfer_ownership(
        self,
        caller: str,
        device_id: int,
        new_owner: str,
    ) -> None:
        self._require_not_paused()
        self._require_admin(caller)
        record = self._require_device(device_id)
        target = self._new_owner(record, new_owner)
        _log.warning(
            "emergency transfer of device %d by administrator %s",
            device_id, self._root_admin,
        )
        self._apply_transfer(record, target)

    def _apply_transfer(self, record: DeviceRecord, new_owner: str) -> None:
        previous = record.owner
        record.owner = new_owner
        self._ledger.emit(
            NotificationType.OWNERSHIP_TRANSFERRED,
            device_id=record.device_id,
            previous_owner=previous,
            new_owner=new_owner,
        )
        _log.info(
            "device %d ownership %s -> %s", record.device_id, previous, new_owner
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @property
    def root_admin(self) -> str:
        return self._root_admin

    def is_paused(self) -> bool:
        return self._paused

    def pause(self, caller: str) -> None:
        self._ledger.execute(self._set_paused, caller, True)

    def unpause(self, caller: str) -> None:
        self._ledger.execute(self._set_paused, caller, False)

    def _set_paused(self, caller: str, paused: bool) -> None:
        self._require_admin(caller)
        if self._paused == paused:
            raise InvalidInput(
                "Registry is already paused" if paused else "Registry is not paused"
            )
        self._paused = paused
        _log.info("registry %s by %s", "paused" if paused else "unpaused", caller)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require_not_paused(self) -> None:
        if self._paused:
            raise SystemPaused()

    def _require_device(self, device_id: int) -> DeviceRecord:
        record = self._devices.get(device_id)
        if record is None or not record.exists:
            raise DeviceNotFound(device_id)
        return record

    def _require_owner(self, record: DeviceRecord, caller: str) -> None:
        if not isinstance(caller, str) or caller.lower() != record.owner.lower():
            _log.debug("device %d: rejected call from non-owner", record.device_id)
            raise NotOwner(record.device_id, caller)

    def _require_admin(self, caller: str) -> None:
        if not isinstance(caller, str) or caller.lower() != self._root_admin.lower():
            raise NotAdmin(caller)

    @staticmethod
    def _identity(caller: str) -> str:
        try:
            return normalize_address(caller)
        except ValueError as exc:
            raise InvalidInput(f"Invalid caller identity: {caller!r}") from exc

    @staticmethod
    def _bound_key(bound_key: BytesLike) -> str:
        try:
            key = normalize_address(bound_key)
        except (TypeError, ValueError) as exc:
            raise InvalidKey(bound_key) from exc
        if is_zero_address(key):
            raise InvalidKey(bound_key)
        return key

    @staticmethod
    def _new_owner(record: DeviceRecord, new_owner: str) -> str:
        try:
            target = normalize_address(new_owner)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Invalid new owner: {new_owner!r}") from exc
        if is_zero_address(target):
            raise InvalidInput("New owner must not be the zero address")
        if target == record.owner:
            raise SameOwner(record.device_id, target)
        return target

    @staticmethod
    def _revocation_input(
        device_id: int,
        fingerprint: BytesLike,
        auth_signature: BytesLike,
    ) -> Tuple[str, bytes]:
        try:
            sig = to_bytes(auth_signature) if auth_signature else b""
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Malformed signature for device {device_id}") from exc
        if not sig:
            raise EmptySignature(device_id)

        try:
            fp = normalize_fingerprint(fingerprint)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Malformed fingerprint: {exc}") from exc
        if is_zero_fingerprint(fp):
            raise ZeroFingerprint(device_id)
        return fp, sig

    @staticmethod
    def _transfer_auth_input(
        device_id: int,
        message: Optional[BytesLike],
        auth_signature: Optional[BytesLike],
    ) -> Tuple[bytes, bytes]:
        if message is None or auth_signature is None:
            raise InvalidInput(
                "Authenticated transfer requires both message and signature"
            )
        try:
            payload = to_bytes(message)
            sig = to_bytes(auth_signature)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Malformed transfer authentication: {exc}") from exc
        if not payload:
            raise InvalidInput("Transfer authentication message is empty")
        if not sig:
            raise EmptySignature(device_id)
        return payload, sig

    # ------------------------------------------------------------------
    # Read helpers for observers
    # ------------------------------------------------------------------

    def revoked_fingerprints(self, device_id: int) -> List[str]:
        """Sorted revoked fingerprints of a device."""
        self._require_device(device_id)
        return sorted(self._revoked[device_id])
