"""Synchronization cache settings."""

from pydantic import BaseModel, Field


DEFAULT_WINDOW_SIZE = 1000
DEFAULT_RECONCILE_INTERVAL = 15 * 60.0
DEFAULT_HEALTH_THRESHOLD = 100
DEFAULT_RESUBSCRIBE_DELAY = 5.0
DEFAULT_DB_PATH = "./lockreg_cache.db"


class SyncConfig(BaseModel):
    """Tunable parameters of a RevocationCache."""

    window_size: int = Field(
        default=DEFAULT_WINDOW_SIZE,
        ge=1,
        description="Positions covered by one query during replay/reconciliation.",
    )
    reconcile_interval: float = Field(
        default=DEFAULT_RECONCILE_INTERVAL,
        ge=0,
        description="Seconds between reconciliation passes. 0 disables the "
                    "periodic task.",
    )
    health_threshold: int = Field(
        default=DEFAULT_HEALTH_THRESHOLD,
        ge=1,
        description="Cache is healthy while fewer positions than this "
                    "separate the checkpoint from the head.",
    )
    resubscribe_delay: float = Field(
        default=DEFAULT_RESUBSCRIBE_DELAY,
        ge=0,
        description="Seconds to wait before re-opening a dropped subscription.",
    )
    db_path: str = Field(default=DEFAULT_DB_PATH)
