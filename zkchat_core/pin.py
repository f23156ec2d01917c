"""
zkchat_core.pin
---------------
PIN-based protection for a locally stored private key.

Envelope layout: base64(salt[16] || nonce[12] || AES-GCM("OK:" + secret)).
The "OK:" prefix lets decryption tell a correct PIN apart from a decrypt that
merely produced bytes.
"""

from __future__ import annotations
import asyncio
import os
from typing import Optional
from urllib.parse import urlparse

from cryptography.exceptions import InvalidTag

from .crypto import aead_decrypt, aead_encrypt, pbkdf2_sha256
from .errors import ContextError, FormatError
from .logger import get_logger
from .utils import b64d, b64e

log = get_logger("ZK.Pin")

SALT_LENGTH = 16
IV_LENGTH = 12
PBKDF2_ITERATIONS = 100000
VERIFY_PREFIX = "OK:"

ENCRYPTED_SECRET_KEY = "encrypted_secret"
AUTO_LOGIN_METHOD_KEY = "auto_login_method"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def is_secure_context(origin: Optional[str]) -> bool:
    """True for https origins and loopback hosts; None means a local process."""
    if origin is None:
        return True
    parsed = urlparse(origin)
    if parsed.scheme == "https":
        return True
    return (parsed.hostname or "") in _LOOPBACK_HOSTS


def require_secure_context(origin: Optional[str]) -> None:
    if not is_secure_context(origin):
        raise ContextError(
            "PIN encryption requires HTTPS. Please access via https:// or localhost."
        )


def _derive(pin: str, salt: bytes) -> bytes:
    return pbkdf2_sha256(pin.encode("utf-8"), salt, PBKDF2_ITERATIONS)


def encrypt_with_pin(secret: str, pin: str, origin: Optional[str] = None) -> str:
    require_secure_context(origin)
    salt = os.urandom(SALT_LENGTH)
    nonce, ct = aead_encrypt(_derive(pin, salt), (VERIFY_PREFIX + secret).encode("utf-8"))
    return b64e(salt + nonce + ct)


def decrypt_with_pin(encrypted: str, pin: str, origin: Optional[str] = None) -> Optional[str]:
    """Returns the secret, or None for a wrong PIN or an unreadable envelope."""
    require_secure_context(origin)
    try:
        combined = b64d(encrypted)
        if len(combined) <= SALT_LENGTH + IV_LENGTH:
            return None
        salt = combined[:SALT_LENGTH]
        nonce = combined[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        pt = aead_decrypt(_derive(pin, salt), nonce, combined[SALT_LENGTH + IV_LENGTH:])
        text = pt.decode("utf-8")
    except (FormatError, InvalidTag, UnicodeDecodeError):
        return None
    if not text.startswith(VERIFY_PREFIX):
        return None
    return text[len(VERIFY_PREFIX):]


class LocalSecretGuard:
    """
    Async front for the PIN envelope plus its durable storage slot.

    The KDF runs in a worker thread so the event loop stays responsive.
    """

    def __init__(self, storage=None, origin: Optional[str] = None):
        self.storage = storage
        self.origin = origin

    async def encrypt(self, secret: str, pin: str) -> str:
        require_secure_context(self.origin)
        return await asyncio.to_thread(encrypt_with_pin, secret, pin, self.origin)

    async def decrypt(self, encrypted: str, pin: str) -> Optional[str]:
        require_secure_context(self.origin)
        return await asyncio.to_thread(decrypt_with_pin, encrypted, pin, self.origin)

    # storage slot
    def has_encrypted_secret(self) -> bool:
        return bool(self.storage and self.storage.get_item(ENCRYPTED_SECRET_KEY))

    def store_encrypted_secret(self, encrypted: str) -> None:
        self.storage.set_item(ENCRYPTED_SECRET_KEY, encrypted)
        self.storage.set_item(AUTO_LOGIN_METHOD_KEY, "secret")
        log.info("Stored PIN-protected secret")

    def get_encrypted_secret(self) -> Optional[str]:
        if not self.storage:
            return None
        return self.storage.get_item(ENCRYPTED_SECRET_KEY)

    def clear_encrypted_secret(self) -> None:
        if self.storage:
            self.storage.remove_item(ENCRYPTED_SECRET_KEY)

    async def protect(self, secret: str, pin: str) -> str:
        encrypted = await self.encrypt(secret, pin)
        self.store_encrypted_secret(encrypted)
        return encrypted

    async def unlock(self, pin: str) -> Optional[str]:
        encrypted = self.get_encrypted_secret()
        if not encrypted:
            return None
        secret = await self.decrypt(encrypted, pin)
        if secret is None:
            log.info("PIN rejected")
        return secret
