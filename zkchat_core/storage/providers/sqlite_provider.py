from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import json, os, sqlite3

from zkchat_core.storage.provider import StorageProvider
from zkchat_core.utils import now_ts

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS client_items(
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS client_audit(
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        ts TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL
    )""",
)


class SQLiteStorage(StorageProvider):
    """Durable client storage in a single SQLite file; one transaction per write."""

    def __init__(self, path: str = "db/zkchat_client.db"):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self.path = path
        self.db = sqlite3.connect(path, check_same_thread=False)
        with self.db:
            for stmt in _SCHEMA:
                self.db.execute(stmt)

    def set_item(self, key: str, value: str) -> None:
        with self.db:
            self.db.execute(
                "INSERT INTO client_items(name, value, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, value, now_ts()),
            )

    def get_item(self, key: str) -> Optional[str]:
        row = self.db.execute("SELECT value FROM client_items WHERE name=?", (key,)).fetchone()
        return row[0] if row else None

    def remove_item(self, key: str) -> None:
        with self.db:
            self.db.execute("DELETE FROM client_items WHERE name=?", (key,))

    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self.db:
            self.db.execute(
                "INSERT INTO client_audit(ts, event_type, payload) VALUES(?, ?, ?)",
                (now_ts(), event_type, json.dumps(payload, sort_keys=True)),
            )

    def list_events(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        rows = self.db.execute("SELECT ts, event_type, payload FROM client_audit ORDER BY seq").fetchall()
        return [(ts, event_type, json.loads(payload)) for ts, event_type, payload in rows]

    def close(self) -> None:
        self.db.close()
