"""
lockreg Core — device identity binding and credential revocation.

DeviceRegistry is the contract; Ledger is the in-process execution
environment that gives each registry call atomicity and an ordered
notification log.  lockreg_sync mirrors that log off-chain.
"""

__version__ = "0.1.0"

from .model import (
    DeviceRecord,
    Notification,
    NotificationType,
    Receipt,
    RegistryConfig,
    MAX_REVOKED,
    ZERO_ADDRESS,
    ZERO_FINGERPRINT,
)
from .errors import (
    RegistryError,
    InvalidKey,
    InvalidInput,
    EmptySignature,
    ZeroFingerprint,
    DeviceNotFound,
    NotOwner,
    NotAdmin,
    AuthenticationFailed,
    QuotaExceeded,
    AlreadyRevoked,
    SameOwner,
    SystemPaused,
)
from .crypto import (
    keccak_hex,
    generate_device_key,
    device_address,
    sign_message,
    sign_fingerprint,
    recover_signer,
    normalize_address,
    normalize_fingerprint,
    fingerprint_credential,
)
from .verifier import authenticate, require_authentic
from .ledger import Ledger
from .registry import DeviceRegistry
