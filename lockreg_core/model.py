"""
lockreg_core/model.py — Lock Registry Data Model

Canonical data structures shared by the registry, the ledger stand-in
and the off-chain synchronization cache.  Everything that crosses a
process boundary (notifications, receipts, device info) is a Pydantic
model so it can be dumped to JSON and validated on the way back in.

Identities (owners, bound keys, callers) are checksummed EVM addresses.
Credential fingerprints are 32-byte hashes written as 0x-prefixed
lowercase hex.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Default ceiling on revoked credentials per device.
MAX_REVOKED = 1000

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_FINGERPRINT = "0x" + "0" * 64

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
FINGERPRINT_PATTERN = r"^0x[0-9a-f]{64}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class NotificationType(str, Enum):
    """Notifications appended to the log by mutating registry calls.

    Values match the event names of the deployed contract so that
    notifications decoded from chain logs and notifications produced by
    the in-process ledger are interchangeable.
    """
    DEVICE_REGISTERED = "DeviceRegistered"
    CREDENTIAL_REVOKED = "CredentialRevoked"
    OWNERSHIP_TRANSFERRED = "OwnershipTransferred"


# ---------------------------------------------------------------------------
# Device record
# ---------------------------------------------------------------------------

class DeviceRecord(BaseModel):
    """One registered lock device.

    bound_key is set once at registration and never reassigned.  It is
    the anchor that makes a signature from one device useless against
    any other device's record.
    """

    device_id: int = Field(
        ...,
        ge=1,
        description="Sequential identifier assigned at registration.",
    )
    owner: str = Field(
        ...,
        pattern=ADDRESS_PATTERN,
        description="Administrative owner allowed to revoke and transfer.",
    )
    bound_key: str = Field(
        ...,
        pattern=ADDRESS_PATTERN,
        description="Address derived from the device's public key.",
    )
    revoked_count: int = Field(
        default=0,
        ge=0,
        description="Number of credentials revoked for this device.",
    )
    exists: bool = Field(default=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class Notification(BaseModel):
    """An immutable, totally ordered record emitted by a registry call.

    Ordering is (position, log_index): position is the block the call
    was included in, log_index the emission order inside that block.
    Which optional fields are present depends on the type:

    - DeviceRegistered:      owner, bound_key
    - CredentialRevoked:     fingerprint, owner
    - OwnershipTransferred:  previous_owner, new_owner
    """

    model_config = ConfigDict(frozen=True)

    type: NotificationType
    position: int = Field(..., ge=1)
    log_index: int = Field(default=0, ge=0)
    device_id: int = Field(..., ge=1)
    owner: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    bound_key: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    fingerprint: Optional[str] = Field(default=None, pattern=FINGERPRINT_PATTERN)
    previous_owner: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    new_owner: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)

    @model_validator(mode="after")
    def validate_type_fields(self) -> "Notification":
        required = {
            NotificationType.DEVICE_REGISTERED: ("owner", "bound_key"),
            NotificationType.CREDENTIAL_REVOKED: ("fingerprint", "owner"),
            NotificationType.OWNERSHIP_TRANSFERRED: ("previous_owner", "new_owner"),
        }[self.type]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(
                f"{self.type.value} notification requires: {', '.join(missing)}"
            )
        return self

    @property
    def order_key(self) -> tuple:
        return (self.position, self.log_index)


# ---------------------------------------------------------------------------
# Transaction receipt
# ---------------------------------------------------------------------------

class Receipt(BaseModel):
    """Outcome of a transaction-style call submitted through the ledger."""

    operation: str
    success: bool
    position: Optional[int] = Field(
        default=None,
        description="Block that included the call. None when it failed.",
    )
    notifications: List[Notification] = Field(default_factory=list)
    result: Any = None
    error: Optional[str] = Field(
        default=None,
        description="Error class name when the call failed.",
    )
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class RegistryConfig(BaseModel):
    """Tunable registry parameters."""

    max_revoked: int = Field(
        default=MAX_REVOKED,
        ge=1,
        description="Per-device ceiling on revoked credentials.",
    )
    require_device_auth_for_transfer: bool = Field(
        default=False,
        description="Reject ownership transfers that do not carry a "
                    "device-key signature.",
    )
