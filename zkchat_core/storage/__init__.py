"""
Client-side durable storage.

``load_storage_provider`` picks the backend from Settings, a plain dict
(``{"provider": ..., "sqlite_path": ...}``) or, with neither, from
ZKCHAT_STORAGE_PROVIDER / ZKCHAT_DB_PATH.
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Union

from ..config import Settings
from .provider import StorageProvider
from .providers.memory_provider import InMemoryStorage
from .providers.sqlite_provider import SQLiteStorage


def load_storage_provider(config: Optional[Union[Settings, Dict[str, Any]]] = None) -> StorageProvider:
    if config is None:
        config = Settings.from_env()
    if isinstance(config, Settings):
        kind, db_path = config.storage_provider, config.db_path
    else:
        env = Settings.from_env()
        kind = config.get("provider") or env.storage_provider
        db_path = config.get("sqlite_path") or env.db_path

    if kind == "memory":
        return InMemoryStorage()
    if kind == "sqlite":
        return SQLiteStorage(db_path)
    raise ValueError(f"Unknown storage provider: {kind}")


__all__ = ["StorageProvider", "InMemoryStorage", "SQLiteStorage", "load_storage_provider"]
