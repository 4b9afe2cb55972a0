"""Persistent watermarks for resuming a queue across restarts.

The queue itself keeps no on-disk state. Workers that want to continue where
they stopped store :attr:`MailboxQueue.watermark` here after each processed
batch and pass it back as ``initial_watermark`` on the next start. A stored
watermark is only valid while the folder's UIDVALIDITY is unchanged.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field


class WatermarkRecord(BaseModel):
    """Last known watermark for one account folder."""

    account: str = Field(..., description="Account key (user@host:port)")
    folder: str = Field(..., description="IMAP folder name")
    uidvalidity: Optional[int] = Field(default=None, description="UIDVALIDITY when stored")
    watermark: int = Field(..., ge=1, description="Next identifier to deliver")
    delivered: int = Field(default=0, ge=0, description="Identifiers delivered so far")
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def matches(self, uidvalidity: Optional[int]) -> bool:
        """Whether this watermark can be reused for a folder with ``uidvalidity``."""
        return self.uidvalidity is None or uidvalidity is None or self.uidvalidity == uidvalidity


SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_watermark (
    account TEXT NOT NULL,
    folder TEXT NOT NULL,
    uidvalidity INTEGER,
    watermark INTEGER NOT NULL,
    delivered INTEGER DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account, folder)
);
"""


class WatermarkStore:
    """SQLite-backed store of queue watermarks."""

    def __init__(self, path: Path) -> None:
        """Initialize state store.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def __enter__(self) -> "WatermarkStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.commit()
        self._conn.close()

    def upsert(self, record: WatermarkRecord) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO queue_watermark(
                    account, folder, uidvalidity, watermark, delivered, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account, folder) DO UPDATE SET
                    uidvalidity=excluded.uidvalidity,
                    watermark=excluded.watermark,
                    delivered=excluded.delivered,
                    updated_at=excluded.updated_at
                """,
                (
                    record.account,
                    record.folder,
                    record.uidvalidity,
                    record.watermark,
                    record.delivered,
                    record.updated_at.isoformat(),
                ),
            )

    def fetch(self, account: str, folder: str) -> Optional[WatermarkRecord]:
        cursor = self._conn.execute(
            """
            SELECT account, folder, uidvalidity, watermark, delivered, updated_at
            FROM queue_watermark WHERE account = ? AND folder = ?
            """,
            (account, folder),
        )
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def delete(self, account: str, folder: str) -> bool:
        """Remove a stored watermark; returns whether one existed."""
        with self._conn:
            cursor = self._conn.execute(
                "DELETE FROM queue_watermark WHERE account = ? AND folder = ?",
                (account, folder),
            )
        return cursor.rowcount > 0

    def list(self) -> List[WatermarkRecord]:
        cursor = self._conn.execute(
            """
            SELECT account, folder, uidvalidity, watermark, delivered, updated_at
            FROM queue_watermark ORDER BY account, folder
            """
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_record(row: tuple) -> WatermarkRecord:
        return WatermarkRecord(
            account=row[0],
            folder=row[1],
            uidvalidity=row[2],
            watermark=row[3],
            delivered=row[4],
            updated_at=datetime.fromisoformat(row[5]),
        )


__all__ = ["WatermarkRecord", "WatermarkStore"]
