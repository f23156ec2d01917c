"""
zkchat_core.config
------------------
Runtime settings resolved from ``ZKCHAT_*`` environment variables.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional
import os

KEY_CACHE_TTL = 24 * 60 * 60     # seconds
BUNKER_TIMEOUT = 30.0            # seconds
BUNKER_SINCE_WINDOW = 10         # seconds of relay history accepted as a response
DEFAULT_INVITE_TTL_DAYS = 7
MIGRATION_BATCH_SIZE = 100


def _csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    origin: str = "http://localhost:3000"
    server_url: str = "http://localhost:3000"
    relay_transport: str = "local"   # "local" | "http"
    relay_url: str = "http://localhost:7777"
    relays: List[str] = field(default_factory=list)
    storage_provider: str = "memory"  # "memory" | "sqlite"
    db_path: str = "db/zkchat_client.db"
    key_cache_ttl: int = KEY_CACHE_TTL
    bunker_timeout: float = BUNKER_TIMEOUT
    bunker_since_window: int = BUNKER_SINCE_WINDOW
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        server_url = os.getenv("ZKCHAT_SERVER_URL", "http://localhost:3000").rstrip("/")
        return cls(
            origin=os.getenv("ZKCHAT_ORIGIN", server_url),
            server_url=server_url,
            relay_transport=os.getenv("ZKCHAT_RELAY_TRANSPORT", "local").lower(),
            relay_url=os.getenv("ZKCHAT_RELAY_URL", "http://localhost:7777").rstrip("/"),
            relays=_csv(os.getenv("ZKCHAT_RELAYS")),
            storage_provider=os.getenv("ZKCHAT_STORAGE_PROVIDER", "memory").lower(),
            db_path=os.getenv("ZKCHAT_DB_PATH", "db/zkchat_client.db"),
            key_cache_ttl=int(os.getenv("ZKCHAT_KEY_CACHE_TTL", str(KEY_CACHE_TTL))),
            bunker_timeout=float(os.getenv("ZKCHAT_BUNKER_TIMEOUT", str(BUNKER_TIMEOUT))),
            bunker_since_window=int(os.getenv("ZKCHAT_BUNKER_SINCE_WINDOW", str(BUNKER_SINCE_WINDOW))),
            log_level=os.getenv("ZKCHAT_LOG_LEVEL", "INFO").upper(),
        )
