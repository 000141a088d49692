"""
lockreg_sync/storage.py — Revocation mirror SQLite backend

Tables:
- revocations:  One row per (device_id, fingerprint) seen by the cache,
                with the position of the notification that carried it
- sync_state:   Key/value progress markers (last_checkpoint)

The mirror is rebuilt from `revocations` on start-up, so a restarted
device resumes from its checkpoint instead of replaying from genesis.
"""

from __future__ import annotations

import sqlite3
from typing import Dict, Iterable, List, Set, Tuple

from pydantic import BaseModel, Field


class MirrorSnapshot(BaseModel):
    """Portable JSON view of the persisted cache state."""

    mirror: Dict[int, List[str]] = Field(default_factory=dict)
    last_checkpoint: int = Field(default=0, ge=0)


class CacheStorage:
    """SQLite storage for a RevocationCache.

    Writes are applied in a single transaction per save() call so the
    checkpoint never runs ahead of the fingerprints it covers.
    """

    def __init__(self, db_path: str = "./lockreg_cache.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS revocations (
                device_id INTEGER NOT NULL,
                fingerprint TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (device_id, fingerprint)
            );

            CREATE INDEX IF NOT EXISTS idx_revocations_position
                ON revocations(position);

            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_mirror(self) -> Dict[int, Set[str]]:
        """All persisted fingerprints grouped by device."""
        mirror: Dict[int, Set[str]] = {}
        rows = self.conn.execute(
            "SELECT device_id, fingerprint FROM revocations"
        ).fetchall()
        for row in rows:
            mirror.setdefault(row["device_id"], set()).add(row["fingerprint"])
        return mirror

    def load_checkpoint(self) -> int:
        row = self.conn.execute(
            "SELECT value FROM sync_state WHERE key = 'last_checkpoint'"
        ).fetchone()
        return row["value"] if row else 0

    def device_fingerprints(self, device_id: int) -> List[str]:
        rows = self.conn.execute(
            "SELECT fingerprint FROM revocations WHERE device_id = ? "
            "ORDER BY position, fingerprint",
            (device_id,),
        ).fetchall()
        return [row["fingerprint"] for row in rows]

    def export_snapshot(self) -> MirrorSnapshot:
        mirror = {
            device_id: sorted(fps)
            for device_id, fps in sorted(self.load_mirror().items())
        }
        return MirrorSnapshot(mirror=mirror, last_checkpoint=self.load_checkpoint())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(
        self,
        entries: Iterable[Tuple[int, str, int]],
        checkpoint: int,
    ) -> None:
        """Persist new (device_id, fingerprint, position) rows and the checkpoint."""
        with self.conn:
            self.conn.executemany(
                """INSERT OR IGNORE INTO revocations
                   (device_id, fingerprint, position)
                   VALUES (?, ?, ?)""",
                list(entries),
            )
            self.conn.execute(
                """INSERT INTO sync_state (key, value)
                   VALUES ('last_checkpoint', ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (checkpoint,),
            )

    def clear(self) -> None:
        """Discard every persisted fingerprint and reset the checkpoint."""
        with self.conn:
            self.conn.execute("DELETE FROM revocations")
            self.conn.execute("DELETE FROM sync_state")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
