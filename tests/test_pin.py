import asyncio

import pytest

from zkchat_core.errors import ContextError
from zkchat_core.pin import (
    AUTO_LOGIN_METHOD_KEY, ENCRYPTED_SECRET_KEY, LocalSecretGuard, decrypt_with_pin, encrypt_with_pin,
    is_secure_context,
)
from zkchat_core.storage import InMemoryStorage
from zkchat_core.utils import b64d

SECRET = "a1" * 32


def test_pin_roundtrip():
    envelope = encrypt_with_pin(SECRET, "1234")
    # salt(16) + nonce(12) + "OK:"+secret + tag(16)
    assert len(b64d(envelope)) == 16 + 12 + 3 + len(SECRET) + 16
    assert decrypt_with_pin(envelope, "1234") == SECRET


def test_wrong_pin_returns_none():
    envelope = encrypt_with_pin(SECRET, "1234")
    assert decrypt_with_pin(envelope, "4321") is None


def test_malformed_envelope_returns_none():
    assert decrypt_with_pin("###", "1234") is None
    assert decrypt_with_pin("AAAA", "1234") is None


def test_each_envelope_uses_fresh_salt():
    assert encrypt_with_pin(SECRET, "1234") != encrypt_with_pin(SECRET, "1234")


def test_secure_context_rules():
    assert is_secure_context(None)
    assert is_secure_context("https://chat.example.org")
    assert is_secure_context("http://localhost:3000")
    assert is_secure_context("http://127.0.0.1:8080")
    assert not is_secure_context("http://chat.example.org")


def test_insecure_origin_is_fatal():
    with pytest.raises(ContextError):
        encrypt_with_pin(SECRET, "1234", origin="http://chat.example.org")
    envelope = encrypt_with_pin(SECRET, "1234")
    with pytest.raises(ContextError):
        decrypt_with_pin(envelope, "1234", origin="http://chat.example.org")


def test_guard_protect_and_unlock():
    storage = InMemoryStorage()
    guard = LocalSecretGuard(storage, origin="https://chat.example.org")

    async def scenario():
        assert not guard.has_encrypted_secret()
        await guard.protect(SECRET, "0000")
        assert guard.has_encrypted_secret()
        assert storage.get_item(AUTO_LOGIN_METHOD_KEY) == "secret"
        assert await guard.unlock("9999") is None
        return await guard.unlock("0000")

    assert asyncio.run(scenario()) == SECRET
    guard.clear_encrypted_secret()
    assert storage.get_item(ENCRYPTED_SECRET_KEY) is None
