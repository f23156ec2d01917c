import pytest

from zkchat_core.transport import transport_factory
from zkchat_core.errors import ZKError
from zkchat_core.transport.transport_base import event_matches, Subscription, TransportTransientError
from zkchat_core.transport import transport_http
from zkchat_core.transport.transport_http import HTTPRelayAdapter
from zkchat_core.transport.transport_local import LocalAdapter

# CMD Line Usage: pytest -v -s --log-cli-level=DEBUG .\tests\test_transport_factory.py


def _event(kind=24133, p="aa" * 32, created_at=1000):
    return {"id": "e1", "kind": kind, "pubkey": "bb" * 32, "created_at": created_at, "tags": [["p", p]], "content": ""}


def test_local_pubsub_loopback(caplog):
    """Ensure LocalAdapter delivers published events to matching subscribers."""
    relay = LocalAdapter()
    received = []

    sub = relay.subscribe([{"kinds": [24133], "#p": ["aa" * 32]}], received.append)
    relay.publish(_event())
    relay.publish(_event(p="cc" * 32))

    assert len(received) == 1 and received[0]["id"] == "e1"
    assert "LOCAL PUB" in caplog.text

    sub.close()
    sub.close()
    relay.publish(_event())
    assert len(received) == 1
    assert relay.subscriptions == []


def test_local_replays_stored_events_to_late_subscribers():
    relay = LocalAdapter()
    relay.publish(_event(created_at=500))
    relay.publish(_event(created_at=1500))
    late = []
    relay.subscribe([{"kinds": [24133], "since": 1000}], late.append)
    assert [e["created_at"] for e in late] == [1500]


def test_filter_matching():
    ev = _event()
    assert event_matches(ev, {})
    assert event_matches(ev, {"kinds": [24133], "authors": ["bb" * 32]})
    assert not event_matches(ev, {"kinds": [9420]})
    assert not event_matches(ev, {"#p": ["dd" * 32]})
    assert not event_matches(ev, {"until": 999})


def test_transport_factory_modes(monkeypatch):
    """Verify that transport_factory returns the adapter named by ZKCHAT_RELAY_TRANSPORT."""
    # Local mode (default)
    monkeypatch.delenv("ZKCHAT_RELAY_TRANSPORT", raising=False)
    assert isinstance(transport_factory(), LocalAdapter)

    # HTTP mode
    monkeypatch.setenv("ZKCHAT_RELAY_TRANSPORT", "http")
    monkeypatch.setenv("ZKCHAT_RELAY_URL", "http://relay.internal:7777/")
    adapter = transport_factory()
    assert isinstance(adapter, HTTPRelayAdapter)
    assert adapter.base_url == "http://relay.internal:7777"
    assert adapter.healthz() == {"status": "ok", "transport": "http"}


class _RefusedResponse:
    ok = False
    status_code = 503
    reason = "Service Unavailable"
    text = "relay overloaded"
    content = b"relay overloaded"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @property
    def raw(self):
        raise AssertionError("body of a refused stream must not be read")


def test_http_refused_stream_is_logged_not_read(monkeypatch, caplog):
    monkeypatch.setattr(transport_http.requests, "get", lambda *a, **kw: _RefusedResponse())
    adapter = HTTPRelayAdapter("http://relay.internal:7777")
    received = []
    sub = Subscription(filters=[{}], handler=received.append, sub_id="sub-refused")

    adapter._sse_reader(sub)

    assert received == []
    assert "Stream refused: 503" in caplog.text
    assert adapter._responses == {}


def test_http_publish_errors_are_zk_errors(monkeypatch):
    monkeypatch.setattr(transport_http.requests, "post", lambda *a, **kw: _RefusedResponse())
    adapter = HTTPRelayAdapter("http://relay.internal:7777")
    with pytest.raises(TransportTransientError) as exc:
        adapter.publish(_event())
    assert isinstance(exc.value, ZKError)
