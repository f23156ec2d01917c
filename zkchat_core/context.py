"""
zkchat_core.context
-------------------
CryptoContext bundles what one logged-in session needs: the selected signer,
the key server client, settings, durable storage and the channel key cache.
Key channels take a context instead of reaching for globals.
"""

from __future__ import annotations
from typing import Optional

from .cache import KeyCache
from .codec import MessageCodec
from .config import Settings
from .errors import KeyUnavailable
from .logger import get_logger
from .pin import require_secure_context
from .server import KeyServer
from .signers import Signer
from .wrapper import KeyWrapper

log = get_logger("ZK.Context")


class CryptoContext:
    def __init__(self, signer: Signer, server: KeyServer, settings: Optional[Settings] = None, storage=None):
        self.settings = settings or Settings()
        self.server = server
        self.storage = storage
        self.key_cache = KeyCache(ttl=self.settings.key_cache_ttl)
        self._signer: Optional[Signer] = signer
        self._wrapper: Optional[KeyWrapper] = None
        self._codec: Optional[MessageCodec] = None
        self.live = False

    def init(self) -> "CryptoContext":
        require_secure_context(self.settings.origin)
        if self._signer is None:
            raise KeyUnavailable("No signing method available. Use an extension, bunker, or local key login.")
        self.live = True
        log.info(f"Crypto context ready (signer={self._signer.backend})")
        return self

    @property
    def signer(self) -> Signer:
        if self._signer is None:
            raise KeyUnavailable("Session has ended; log in again.")
        return self._signer

    @property
    def wrapper(self) -> KeyWrapper:
        if self._wrapper is None:
            self._wrapper = KeyWrapper(self.signer)
        return self._wrapper

    @property
    def codec(self) -> MessageCodec:
        if self._codec is None:
            self._codec = MessageCodec(self.signer)
        return self._codec

    def audit(self, event_type: str, payload: dict) -> None:
        if self.storage is not None:
            self.storage.log_event(event_type, payload)

    async def teardown(self) -> None:
        self.key_cache.clear()
        signer, self._signer = self._signer, None
        self._wrapper = None
        self._codec = None
        self.live = False
        if signer is not None:
            await signer.close()
        log.info("Crypto context torn down")
