# zkchat_core/transport/transport_local.py
from __future__ import annotations
from typing import List
import threading

from zkchat_core.logger import get_logger
from zkchat_core.transport.transport_base import BaseTransport, EventHandler, Filter, Subscription
from zkchat_core.utils import new_id

log = get_logger("ZK.Transport.Local")


class LocalAdapter(BaseTransport):
    """
    In-process relay.

    Stores every published event and replays stored matches to each new
    subscription, the way a relay answers a REQ before streaming live events.
    Handlers run synchronously on the publishing thread.
    """

    name = "local"

    def __init__(self, max_events: int = 10000):
        self.events: List[dict] = []
        self.subscriptions: List[Subscription] = []
        self.max_events = max_events
        self._lock = threading.RLock()

    def publish(self, event: dict):
        log.info(f"[LOCAL PUB] kind={event.get('kind')} id={str(event.get('id', ''))[:12]}")
        with self._lock:
            self.events.append(event)
            if len(self.events) > self.max_events:
                del self.events[: len(self.events) - self.max_events]
            live = [s for s in self.subscriptions if not s.closed]
        for sub in live:
            if not sub.closed and sub.matches(event):
                sub.handler(event)
        return {"ok": True, "id": event.get("id")}

    def subscribe(self, filters: List[Filter], handler: EventHandler) -> Subscription:
        sub = Subscription(filters=list(filters), handler=handler, sub_id=new_id(), _on_close=self._remove)
        with self._lock:
            self.subscriptions.append(sub)
            stored = list(self.events)
        log.info(f"[LOCAL SUB] {sub.sub_id[:8]} filters={filters}")
        for event in stored:
            if sub.closed:
                break
            if sub.matches(event):
                handler(event)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self.subscriptions:
                self.subscriptions.remove(sub)
        log.info(f"[LOCAL UNSUB] {sub.sub_id[:8]}")

    def close(self) -> None:
        for sub in list(self.subscriptions):
            sub.close()
