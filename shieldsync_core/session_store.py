"""
SQLite-backed persistence for the wallet session record.

A single JSON record ``{wallet_id, derived_address, owner, secret}`` is
stored under a fixed key so a later process can restore the session for
the same owner.  ``secret`` is a blob produced by
:func:`shieldsync_core.crypto.seal_secret`.

Usage:
    store = SessionStore("data/shieldsync.db")
    store.save(SessionRecord(wallet_id, address, owner, seal_secret(key, sig)))
    record = store.load()
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("shieldsync_session")

DEFAULT_STORE_KEY = "shieldsync.wallet"


@dataclass
class SessionRecord:
    wallet_id: str
    derived_address: str
    owner: str
    secret: dict = field(repr=False)
    saved_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> SessionRecord:
        data = json.loads(text)
        return cls(
            wallet_id=str(data["wallet_id"]),
            derived_address=str(data.get("derived_address") or ""),
            owner=str(data["owner"]).lower(),
            secret=dict(data["secret"]),
            saved_at=float(data.get("saved_at", 0.0)),
        )


class SessionStore:
    """Thin SQLite key/value wrapper holding one session record."""

    def __init__(self, db_path: str = "data/shieldsync.db", key: str = DEFAULT_STORE_KEY):
        self.db_path = db_path
        self.key = key
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key        TEXT PRIMARY KEY,
                value      TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self._conn.commit()
        logger.debug(f"Session store opened: {db_path}")

    def save(self, record: SessionRecord) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            (self.key, record.to_json(), time.time()),
        )
        self._conn.commit()

    def load(self) -> Optional[SessionRecord]:
        """The stored record, or None.  A corrupt record is deleted."""
        row = self._conn.execute(
            "SELECT value FROM kv WHERE key = ?", (self.key,)
        ).fetchone()
        if row is None:
            return None
        try:
            return SessionRecord.from_json(row["value"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Discarding unreadable session record: {exc}")
            self.delete()
            return None

    def delete(self) -> bool:
        cur = self._conn.execute("DELETE FROM kv WHERE key = ?", (self.key,))
        self._conn.commit()
        return cur.rowcount > 0

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
