"""
lockreg Sync — off-chain mirror of the revocation ledger.

Locks answer "is this credential revoked?" from a local SQLite-backed
mirror that is fed by replay, a real-time subscription and periodic
reconciliation against an EventSource.
"""

from .config import SyncConfig
from .errors import (
    SyncError,
    SourceUnavailable,
    MalformedNotification,
    ReconciliationError,
)
from .storage import CacheStorage, MirrorSnapshot
from .sources import (
    EventSource,
    Subscription,
    LedgerEventSource,
    Web3EventSource,
    REGISTRY_EVENTS_ABI,
    CREDENTIAL_REVOKED_TOPIC,
)
from .cache import RevocationCache, CacheState, HealthReport, CacheStats
