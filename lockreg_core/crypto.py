"""
lockreg_core/crypto.py — Cryptographic primitives for the lock registry.

Uses eth-account / eth-utils exclusively.  No custom crypto.
- keccak-256 for fingerprints and message hashing
- secp256k1 ECDSA with public-key recovery for device authentication
- EIP-191 ("\\x19Ethereum Signed Message:\\n" + len) domain separation,
  so a raw transaction signature can never pass as an authentication
  signature
- RFC 8785 canonical JSON (jcs) for credential fingerprints

All functions are deterministic except key generation and have no side
effects.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

import jcs
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import is_address, keccak, to_checksum_address

from .model import ZERO_ADDRESS, ZERO_FINGERPRINT


BytesLike = Union[bytes, bytearray, str]

SIGNATURE_LENGTH = 65
FINGERPRINT_LENGTH = 32


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def keccak_hex(data: bytes) -> str:
    """Compute keccak-256 and return it as 0x-prefixed lowercase hex."""
    return "0x" + keccak(primitive=bytes(data)).hex()


def to_bytes(value: BytesLike) -> bytes:
    """Accept raw bytes or hex text (with or without 0x) and return bytes.

    Raises:
        ValueError: If text is not valid hex.
        TypeError:  For any other input type.
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value[:2] in ("0x", "0X") else value
        return bytes.fromhex(text)
    raise TypeError(f"Expected bytes or hex string, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def normalize_address(value: Union[str, bytes]) -> str:
    """Return the checksummed form of an address.

    Raises:
        ValueError: If value is not a well-formed address.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 20:
            raise ValueError(f"Binary address must be 20 bytes, got {len(value)}")
        return to_checksum_address("0x" + bytes(value).hex())
    if not value or not is_address(value):
        raise ValueError(f"Not a well-formed address: {value!r}")
    return to_checksum_address(value)


def is_zero_address(address: str) -> bool:
    return address.lower() == ZERO_ADDRESS


# ---------------------------------------------------------------------------
# Key management
# ---------------------------------------------------------------------------

def generate_device_key() -> LocalAccount:
    """Generate a new secp256k1 device identity.

    The returned account exposes .key (private key bytes) and .address
    (the bound verification key to register).
    """
    return Account.create()


def device_address(private_key: BytesLike) -> str:
    """Derive the bound verification key (address) of a private key."""
    return Account.from_key(private_key).address


# ---------------------------------------------------------------------------
# Signing and recovery
# ---------------------------------------------------------------------------

def sign_message(private_key: BytesLike, message: bytes) -> str:
    """Sign message under the EIP-191 prefix. Returns 0x-hex (65 bytes)."""
    signed = Account.sign_message(
        encode_defunct(primitive=bytes(message)),
        private_key=private_key,
    )
    return "0x" + bytes(signed.signature).hex()


def recover_signer(message: bytes, signature: BytesLike) -> Optional[str]:
    """Recover the address that produced signature over message.

    Returns None for any malformed or unrecoverable signature.  Callers
    treat None exactly like a key mismatch.
    """
    try:
        sig = to_bytes(signature)
        if len(sig) != SIGNATURE_LENGTH:
            return None
        return Account.recover_message(
            encode_defunct(primitive=bytes(message)),
            signature=sig,
        )
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Credential fingerprints
# ---------------------------------------------------------------------------

def normalize_fingerprint(value: BytesLike) -> str:
    """Return a fingerprint as 0x-prefixed lowercase hex (32 bytes).

    Raises:
        ValueError: If value is not exactly 32 bytes of hex/binary.
        TypeError:  For unsupported input types.
    """
    raw = to_bytes(value)
    if len(raw) != FINGERPRINT_LENGTH:
        raise ValueError(
            f"Fingerprint must be {FINGERPRINT_LENGTH} bytes, got {len(raw)}"
        )
    return "0x" + raw.hex()


def fingerprint_bytes(fingerprint: str) -> bytes:
    """Raw 32 bytes of a normalized fingerprint (the signed message)."""
    return bytes.fromhex(fingerprint[2:])


def is_zero_fingerprint(fingerprint: str) -> bool:
    return fingerprint == ZERO_FINGERPRINT


def fingerprint_credential(credential: Mapping[str, Any]) -> str:
    """Fingerprint a verifiable credential.

    Pipeline: credential → RFC 8785 canonical JSON → keccak-256.
    Two holders of the same credential content always derive the same
    fingerprint regardless of key order or whitespace.
    """
    return keccak_hex(jcs.canonicalize(dict(credential)))


def sign_fingerprint(private_key: BytesLike, fingerprint: BytesLike) -> str:
    """Produce the device signature that authorises revoking fingerprint."""
    return sign_message(private_key, fingerprint_bytes(normalize_fingerprint(fingerprint)))
