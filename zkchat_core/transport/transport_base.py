from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import threading

from zkchat_core.errors import ZKError

Filter = Dict[str, Any]
EventHandler = Callable[[dict], None]


class TransportError(ZKError):
    """Publish or subscribe failure on the broadcast transport."""


class TransportTransientError(TransportError):
    pass


class TransportPermanentError(TransportError):
    pass


def event_matches(event: dict, flt: Filter) -> bool:
    """Relay-style filter match: kinds, authors, ids, #<tag>, since, until."""
    if "kinds" in flt and event.get("kind") not in flt["kinds"]:
        return False
    if "authors" in flt and event.get("pubkey") not in flt["authors"]:
        return False
    if "ids" in flt and event.get("id") not in flt["ids"]:
        return False
    created_at = event.get("created_at", 0)
    if "since" in flt and created_at < flt["since"]:
        return False
    if "until" in flt and created_at > flt["until"]:
        return False
    for name, wanted in flt.items():
        if not name.startswith("#"):
            continue
        tag = name[1:]
        values = {t[1] for t in event.get("tags", []) if len(t) > 1 and t[0] == tag}
        if not values.intersection(wanted):
            return False
    return True


@dataclass(eq=False)
class Subscription:
    """Handle for one live subscription. close() is idempotent."""
    filters: List[Filter]
    handler: EventHandler
    sub_id: str = ""
    _on_close: Optional[Callable[["Subscription"], None]] = None
    _closed: threading.Event = field(default_factory=threading.Event)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def matches(self, event: dict) -> bool:
        return any(event_matches(event, f) for f in self.filters)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close:
            self._on_close(self)


class BaseTransport:
    """
    Broadcast transport contract.

    Events are plain dicts in signed-event shape. Delivery is best effort and
    unordered; handlers may be invoked from a background thread.
    """
    name: str = "base"

    def publish(self, event: dict) -> Any:
        raise NotImplementedError

    def subscribe(self, filters: List[Filter], handler: EventHandler) -> Subscription:
        raise NotImplementedError

    def healthz(self) -> dict:
        return {"status": "ok", "transport": self.name}

    def close(self) -> None:
        return
