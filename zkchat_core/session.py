"""
zkchat_core.session
-------------------
Login / logout lifecycle. Each login selects exactly one signer and builds a
fresh CryptoContext around it; logout tears the context down and forgets the
persisted remote signer connection.
"""

from __future__ import annotations
from typing import Any, Optional

from .bunker import BUNKER_CONNECTION_KEY, BunkerConnection, RemoteSignerProxy
from .config import Settings
from .context import CryptoContext
from .crypto import secret_key_from_hex
from .errors import KeyUnavailable
from .logger import get_logger
from .pin import AUTO_LOGIN_METHOD_KEY, LocalSecretGuard
from .server import KeyServer
from .signers import LocalSigner, select_signer
from .storage import InMemoryStorage, StorageProvider

log = get_logger("ZK.Session")


class Session:
    def __init__(self, server: KeyServer, settings: Optional[Settings] = None,
                 storage: Optional[StorageProvider] = None):
        self.server = server
        self.settings = settings or Settings()
        self.storage = storage if storage is not None else InMemoryStorage()
        self.guard = LocalSecretGuard(self.storage, origin=self.settings.origin)
        self.context: Optional[CryptoContext] = None

    @property
    def logged_in(self) -> bool:
        return self.context is not None and self.context.live

    def _start(self, signer) -> CryptoContext:
        self.context = CryptoContext(signer, self.server, self.settings, self.storage).init()
        return self.context

    async def login_with_secret(self, secret_hex: str, pin: Optional[str] = None) -> CryptoContext:
        """Local key login; with a PIN the key is also persisted PIN-protected."""
        signer = LocalSigner(secret_key_from_hex(secret_hex))
        if pin is not None:
            await self.guard.protect(secret_hex, pin)
        self.storage.set_item(AUTO_LOGIN_METHOD_KEY, "secret")
        self.storage.log_event("login", {"method": "secret", "pubkey": signer.pubkey})
        return self._start(signer)

    async def unlock_with_pin(self, pin: str) -> Optional[CryptoContext]:
        """None when no secret is stored or the PIN is wrong."""
        secret_hex = await self.guard.unlock(pin)
        if secret_hex is None:
            return None
        return await self.login_with_secret(secret_hex)

    async def login_with_bunker(self, connection: BunkerConnection, transport) -> CryptoContext:
        proxy = RemoteSignerProxy(connection, transport, timeout=self.settings.bunker_timeout,
                                  since_window=self.settings.bunker_since_window)
        await proxy.connect()
        signer = select_signer(proxy=proxy)
        pubkey = await signer.get_public_key()
        self.storage.set_item(BUNKER_CONNECTION_KEY, connection.to_json())
        self.storage.set_item(AUTO_LOGIN_METHOD_KEY, "bunker")
        self.storage.log_event("login", {"method": "bunker", "pubkey": pubkey})
        return self._start(signer)

    async def resume_bunker(self, transport) -> CryptoContext:
        stored = self.storage.get_item(BUNKER_CONNECTION_KEY)
        if not stored:
            raise KeyUnavailable("No saved remote signer connection")
        return await self.login_with_bunker(BunkerConnection.from_json(stored), transport)

    async def login_with_extension(self, capability: Any) -> CryptoContext:
        signer = select_signer(capability=capability)
        pubkey = await signer.get_public_key()
        self.storage.set_item(AUTO_LOGIN_METHOD_KEY, "extension")
        self.storage.log_event("login", {"method": "extension", "pubkey": pubkey})
        return self._start(signer)

    async def logout(self) -> None:
        if self.context is not None:
            await self.context.teardown()
            self.context = None
        self.storage.remove_item(BUNKER_CONNECTION_KEY)
        self.storage.remove_item(AUTO_LOGIN_METHOD_KEY)
        self.storage.log_event("logout", {})
        log.info("Logged out")
