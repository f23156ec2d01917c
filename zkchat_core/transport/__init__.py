# zkchat_core/transport/__init__.py
import os
from zkchat_core.transport.transport_base import BaseTransport, Subscription, event_matches
from zkchat_core.transport.transport_local import LocalAdapter
from zkchat_core.transport.transport_http import HTTPRelayAdapter


def transport_factory(mode: str | None = None) -> BaseTransport:
    """
    ZKCHAT_RELAY_TRANSPORT:
      - "local" → in-process relay (tests, single-process deployments)
      - "http"  → relay gateway at ZKCHAT_RELAY_URL
    """
    mode = (mode or os.getenv("ZKCHAT_RELAY_TRANSPORT", "local")).lower()

    if mode == "http":
        return HTTPRelayAdapter(os.getenv("ZKCHAT_RELAY_URL", "http://localhost:7777"))

    return LocalAdapter()


__all__ = [
    "BaseTransport",
    "Subscription",
    "event_matches",
    "LocalAdapter",
    "HTTPRelayAdapter",
    "transport_factory",
]
