"""
zkchat_core.cache
-----------------
Session-lifetime channel key cache, one entry per tenant scope.

Entries are immutable values with an absolute expiry; writers replace the
whole entry, so concurrent readers never see a half-written key. Nothing here
is ever persisted.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Optional
import time

from .config import KEY_CACHE_TTL

COMMUNITY_SCOPE = "community"


def team_scope(team_slug: str) -> str:
    return f"team:{team_slug}"


def channel_scope(channel_id) -> str:
    return f"channel:{channel_id}"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    expiry: float


class KeyCache:
    def __init__(self, ttl: float = KEY_CACHE_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, scope: str) -> Optional[str]:
        entry = self._entries.get(scope)
        if entry is None:
            return None
        if self._clock() < entry.expiry:
            return entry.key
        self._entries.pop(scope, None)
        return None

    def put(self, scope: str, key: str) -> CacheEntry:
        entry = CacheEntry(key=key, expiry=self._clock() + self.ttl)
        self._entries[scope] = entry
        return entry

    def clear(self, scope: Optional[str] = None) -> None:
        if scope is None:
            self._entries.clear()
        else:
            self._entries.pop(scope, None)

    def __len__(self) -> int:
        return len(self._entries)
