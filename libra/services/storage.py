"""
libra/services/storage.py

Append-only event log backed by SQLite.
Each monitoring tick is written as one transaction so its events become
visible together, in the order they were produced.
"""
from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Sequence

from ..domain.models import DomainEvent
from ..errors import StorageFault

logger = logging.getLogger("libra.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS libra_logs (
    scale TEXT NOT NULL,
    model TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    amount REAL NOT NULL,
    location TEXT NOT NULL DEFAULT '',
    ingredient TEXT NOT NULL DEFAULT ''
)
"""

INSERT = (
    "INSERT INTO libra_logs (scale, model, timestamp, action, amount, location, ingredient) "
    "VALUES (?, ?, ?, ?, ?, ?, ?)"
)


class EventStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(SCHEMA)
        except (sqlite3.Error, OSError) as exc:
            raise StorageFault(f"cannot initialise event log {self.path}: {exc}") from exc
        logger.info("Event log at %s", self.path)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def append_batch(self, events: Sequence[DomainEvent]) -> None:
        """Write ``events`` atomically, preserving their order."""

        if not events:
            return
        rows = [event.to_record() for event in events]
        conn = None
        try:
            conn = self._connect()
            with conn:
                conn.executemany(INSERT, rows)
        except (sqlite3.Error, OSError) as exc:
            raise StorageFault(f"could not append {len(rows)} event(s) to {self.path}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()
        logger.debug("Appended %d event(s)", len(rows))

    def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the last ``limit`` rows, oldest first."""

        try:
            conn = self._connect()
            try:
                conn.row_factory = sqlite3.Row
                cur = conn.execute(
                    "SELECT scale, model, timestamp, action, amount, location, ingredient "
                    "FROM libra_logs ORDER BY rowid DESC LIMIT ?",
                    (int(limit),),
                )
                rows = [dict(row) for row in cur.fetchall()]
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StorageFault(f"could not read {self.path}: {exc}") from exc
        rows.reverse()
        return rows


__all__ = ["EventStore", "SCHEMA"]
