"""
lockreg_core/errors.py — Registry error taxonomy

Every rejection raised by the registry derives from RegistryError and
carries a category:

    input           caller-correctable, raised before any state read
                    beyond existence/ownership
    authorization   raised before any signature recovery
    authentication  the signature did not recover to the bound key
    quota           revocation ceiling reached
    conflict        request is semantically redundant
    system          administrative pause
"""

from __future__ import annotations

from typing import Optional


def _hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class RegistryError(Exception):
    """Base registry error."""
    category = "registry"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class InvalidKey(RegistryError):
    """Bound verification key is empty or not a well-formed address."""
    category = "input"

    def __init__(self, key):
        self.key = key
        super().__init__(f"Invalid verification key: {key!r}")


class InvalidInput(RegistryError):
    """Malformed request argument."""
    category = "input"


class EmptySignature(InvalidInput):
    """Authentication signature missing."""

    def __init__(self, device_id: int):
        self.device_id = device_id
        super().__init__(f"Empty authentication signature for device {device_id}")


class ZeroFingerprint(InvalidInput):
    """Credential fingerprint is the all-zero hash."""

    def __init__(self, device_id: int):
        self.device_id = device_id
        super().__init__(f"Zero credential fingerprint for device {device_id}")


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class DeviceNotFound(RegistryError):
    category = "authorization"

    def __init__(self, device_id: int):
        self.device_id = device_id
        super().__init__(f"Device not found: {device_id}")


class NotOwner(RegistryError):
    category = "authorization"

    def __init__(self, device_id: int, caller: str):
        self.device_id = device_id
        self.caller = caller
        super().__init__(f"Not device owner: device {device_id}, caller {caller}")


class NotAdmin(RegistryError):
    """Caller is not the registry's root administrator."""
    category = "authorization"

    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Not registry administrator: {caller}")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthenticationFailed(RegistryError):
    """Signature did not recover to the device's bound key.

    The text is identical for a key mismatch and for a malformed
    signature.  message and signature are kept on the exception for
    diagnostics only.
    """
    category = "authentication"

    def __init__(self, device_id: int, message: bytes, signature):
        self.device_id = device_id
        self.message = message
        self.signature = signature
        super().__init__(
            f"Authentication failed for device {device_id} "
            f"(message={_hex(message)}, signature={_hex(signature)})"
        )


# ---------------------------------------------------------------------------
# Quota / conflict / system
# ---------------------------------------------------------------------------

class QuotaExceeded(RegistryError):
    category = "quota"

    def __init__(self, device_id: int, limit: int, requested: Optional[int] = None):
        self.device_id = device_id
        self.limit = limit
        self.requested = requested
        detail = f", {requested} more requested" if requested is not None else ""
        super().__init__(
            f"Revocation quota of {limit} reached for device {device_id}{detail}"
        )


class AlreadyRevoked(RegistryError):
    category = "conflict"

    def __init__(self, device_id: int, fingerprint: str):
        self.device_id = device_id
        self.fingerprint = fingerprint
        super().__init__(
            f"Credential already revoked: device {device_id}, {fingerprint}"
        )


class SameOwner(RegistryError):
    category = "conflict"

    def __init__(self, device_id: int, owner: str):
        self.device_id = device_id
        self.owner = owner
        super().__init__(f"Device {device_id} is already owned by {owner}")


class SystemPaused(RegistryError):
    category = "system"

    def __init__(self):
        super().__init__("Registry is paused")
