# zkchat_core/transport/transport_http.py
import json, threading
from typing import List

import requests

from zkchat_core.logger import get_logger
from zkchat_core.transport.transport_base import (
    BaseTransport, EventHandler, Filter, Subscription, TransportPermanentError, TransportTransientError,
)
from zkchat_core.utils import new_id

log = get_logger("ZK.Transport.HTTP")


class HTTPRelayAdapter(BaseTransport):
    """
    HTTP gateway in front of a relay.

    - publish: POST the signed event to /events
    - subscribe: Server-Sent Events from /subscribe, one reader thread per
      subscription; closing the subscription stops its reader
    """

    name = "http"

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._subs: List[Subscription] = []
        self._responses = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Outbound publishing
    # ------------------------------------------------------------------
    def publish(self, event: dict):
        url = f"{self.base_url}/events"
        log.debug(f"[HTTP PUB] → {url} | kind={event.get('kind')}")
        try:
            res = requests.post(url, json=event, headers={"Content-Type": "application/json"}, timeout=self.timeout)
        except requests.RequestException as e:
            log.error(f"[HTTP PUB] Exception: {e}")
            raise TransportTransientError(str(e)) from e
        if res.ok:
            log.info(f"[HTTP PUB] {res.status_code} {res.reason}")
            return res.json() if res.content else {"ok": True}
        log.error(f"[HTTP PUB] {res.status_code}: {res.text}")
        if res.status_code >= 500:
            raise TransportTransientError(f"{res.status_code}: {res.text}")
        raise TransportPermanentError(f"{res.status_code}: {res.text}")

    # ------------------------------------------------------------------
    # Inbound streaming (Server-Sent Events)
    # ------------------------------------------------------------------
    def _sse_reader(self, sub: Subscription):
        url = f"{self.base_url}/subscribe"
        params = {"filters": json.dumps(sub.filters, separators=(",", ":"))}
        log.info(f"[HTTP SUB] Connecting to SSE stream: {url} sub={sub.sub_id[:8]}")

        try:
            with requests.get(url, params=params, stream=True, timeout=(self.timeout, None)) as r:
                if not r.ok:
                    log.error(f"[HTTP SUB] Stream refused: {r.status_code} {r.reason} sub={sub.sub_id[:8]}")
                    return
                r.raw.decode_content = True
                with self._lock:
                    self._responses[sub.sub_id] = r
                log.info(f"[HTTP SUB] Connected to {url} status={r.status_code}")

                event_lines = []
                for raw in r.raw:
                    if sub.closed:
                        break
                    try:
                        line = raw.decode("utf-8").rstrip("\r\n")
                    except UnicodeDecodeError as e:
                        log.error(f"[HTTP SUB] decode error {e}")
                        continue

                    # blank line = dispatch event
                    if line == "":
                        if event_lines:
                            data_str = "\n".join(l[5:].lstrip() for l in event_lines)
                            event_lines = []
                            try:
                                event = json.loads(data_str)
                            except json.JSONDecodeError as e:
                                log.error(f"[SSE parse error] {e}")
                                continue
                            if isinstance(event, dict) and sub.matches(event):
                                sub.handler(event)
                        continue

                    # heartbeat
                    if line.startswith(":"):
                        continue

                    if line.startswith("data:"):
                        event_lines.append(line)

        except (requests.RequestException, AttributeError, ValueError) as e:
            # closing the response from another thread surfaces here
            if not sub.closed:
                log.error(f"[SSE connection error] {e}")

        finally:
            with self._lock:
                self._responses.pop(sub.sub_id, None)
            log.info(f"[HTTP SUB] SSE loop ended for {sub.sub_id[:8]}")

    def subscribe(self, filters: List[Filter], handler: EventHandler) -> Subscription:
        sub = Subscription(filters=list(filters), handler=handler, sub_id=new_id(), _on_close=self._unsubscribe)
        with self._lock:
            self._subs.append(sub)
        log.info(f"[HTTP SUB] Subscribing {sub.sub_id[:8]}")

        t = threading.Thread(target=self._sse_reader, args=(sub,), daemon=True)
        t.start()
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
            response = self._responses.pop(sub.sub_id, None)
        if response is not None:
            response.close()

    def close(self) -> None:
        for sub in list(self._subs):
            sub.close()
