"""
lockreg_core/verifier.py — Authentication Verifier

Decides whether a signature was produced by a device's bound key:

    EIP-191 hash(message) → secp256k1 recovery → address == bound_key

Binding is by exact key equality, never by device identifier.  Because
bound keys are immutable, a valid signature from device A can never
authenticate a request against device B.

authenticate() fails silently (False).  require_authentic() is the
guard form used inside registry calls; it raises AuthenticationFailed
with the same text whatever part of the check failed.
"""

from __future__ import annotations

from .crypto import BytesLike, recover_signer
from .errors import AuthenticationFailed
from .model import DeviceRecord


def authenticate(bound_key: str, message: bytes, signature: BytesLike) -> bool:
    """True iff signature over message recovers to bound_key."""
    recovered = recover_signer(message, signature)
    if recovered is None:
        return False
    return recovered.lower() == bound_key.lower()


def require_authentic(
    record: DeviceRecord,
    message: bytes,
    signature: BytesLike,
) -> None:
    """Raise AuthenticationFailed unless the device signed message."""
    if not authenticate(record.bound_key, message, signature):
        raise AuthenticationFailed(record.device_id, message, signature)
