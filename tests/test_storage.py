import pytest

from zkchat_core.config import Settings
from zkchat_core.storage import InMemoryStorage, SQLiteStorage, load_storage_provider


def test_sqlite_storage_roundtrip(tmp_path):
    db_path = tmp_path / "client.db"
    s = SQLiteStorage(str(db_path))
    s.set_item("encrypted_secret", "abcd")
    s.set_item("encrypted_secret", "efgh")
    assert s.get_item("encrypted_secret") == "efgh"
    s.remove_item("encrypted_secret")
    assert s.get_item("encrypted_secret") is None

    s.log_event("login", {"method": "secret"})
    events = s.list_events()
    assert len(events) == 1
    ts, event_type, payload = events[0]
    assert event_type == "login" and payload == {"method": "secret"}
    assert "T" in ts
    s.close()

    # survives reopening
    s2 = SQLiteStorage(str(db_path))
    assert s2.list_events()[0][1] == "login"
    s2.close()


def test_load_storage_provider(monkeypatch, tmp_path):
    monkeypatch.delenv("ZKCHAT_STORAGE_PROVIDER", raising=False)
    assert isinstance(load_storage_provider(), InMemoryStorage)

    monkeypatch.setenv("ZKCHAT_STORAGE_PROVIDER", "sqlite")
    monkeypatch.setenv("ZKCHAT_DB_PATH", str(tmp_path / "nested" / "z.db"))
    provider = load_storage_provider()
    assert isinstance(provider, SQLiteStorage)
    provider.close()

    with pytest.raises(ValueError):
        load_storage_provider({"provider": "redis"})


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("ZKCHAT_SERVER_URL", "https://chat.example.org/")
    monkeypatch.delenv("ZKCHAT_ORIGIN", raising=False)
    monkeypatch.setenv("ZKCHAT_BUNKER_TIMEOUT", "5")
    monkeypatch.setenv("ZKCHAT_RELAYS", "wss://a.example, wss://b.example")
    settings = Settings.from_env()
    assert settings.server_url == "https://chat.example.org"
    assert settings.origin == "https://chat.example.org"
    assert settings.bunker_timeout == 5.0
    assert settings.relays == ["wss://a.example", "wss://b.example"]
    assert settings.key_cache_ttl == 86400
