"""
zkchat_core.signers
-------------------
The Signer interface and its three backends.

A session selects exactly one signer at login and injects it wherever keys are
wrapped or messages are signed:

- LocalSigner: secp256k1 key held in process memory
- ExternalCapabilitySigner: an injected capability object (browser-extension
  style) exposing get_public_key / sign_event / nip44_encrypt / nip44_decrypt
- RemoteSigner: delegates every operation to a RemoteSignerProxy
"""

from __future__ import annotations
import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

from . import nip44
from .crypto import generate_secret_key, get_public_key, secret_key_from_hex, sign_event
from .errors import FormatError, KeyUnavailable, SignerError, ZKError
from .event import SignedEvent
from .logger import get_logger

log = get_logger("ZK.Signer")


class Signer(ABC):
    backend: str = "base"

    @abstractmethod
    async def get_public_key(self) -> str: ...

    @abstractmethod
    async def sign_event(self, event: SignedEvent) -> SignedEvent: ...

    @abstractmethod
    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str: ...

    @abstractmethod
    async def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str: ...

    async def close(self) -> None:
        return


class LocalSigner(Signer):
    backend = "local"

    def __init__(self, secret: bytes):
        self._secret = bytes(secret)
        self._pubkey = get_public_key(self._secret)

    @classmethod
    def generate(cls) -> "LocalSigner":
        return cls(generate_secret_key())

    @classmethod
    def from_hex(cls, secret_hex: str) -> "LocalSigner":
        return cls(secret_key_from_hex(secret_hex))

    @property
    def pubkey(self) -> str:
        return self._pubkey

    def secret_hex(self) -> str:
        return self._secret.hex()

    async def get_public_key(self) -> str:
        return self._pubkey

    async def sign_event(self, event: SignedEvent) -> SignedEvent:
        return sign_event(event, self._secret)

    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip44.encrypt(plaintext, nip44.get_conversation_key(self._secret, peer_pubkey))

    async def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str:
        return nip44.decrypt(payload, nip44.get_conversation_key(self._secret, peer_pubkey))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ExternalCapabilitySigner(Signer):
    backend = "external"

    def __init__(self, capability: Any):
        for name in ("get_public_key", "sign_event", "nip44_encrypt", "nip44_decrypt"):
            if not callable(getattr(capability, name, None)):
                raise KeyUnavailable(f"Signing capability does not support {name}")
        self.capability = capability

    async def _call(self, name: str, *args) -> Any:
        try:
            return await _maybe_await(getattr(self.capability, name)(*args))
        except ZKError:
            raise
        except Exception as e:
            # foreign code: any failure becomes a signer error with backend context
            log.error(f"Capability {name} failed: {type(e).__name__}: {e}")
            raise SignerError(f"Extension {name} failed: {e}", backend=self.backend) from e

    async def get_public_key(self) -> str:
        return await self._call("get_public_key")

    async def sign_event(self, event: SignedEvent) -> SignedEvent:
        if not event.pubkey:
            event.pubkey = await self.get_public_key()
        signed = await self._call("sign_event", event.to_unsigned_dict())
        if isinstance(signed, str):
            try:
                signed = json.loads(signed)
            except json.JSONDecodeError as e:
                raise FormatError(f"Capability returned malformed event JSON: {e}") from e
        if not isinstance(signed, dict):
            raise FormatError(f"Capability returned {type(signed).__name__} for sign_event")
        return SignedEvent.from_dict(signed)

    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._call("nip44_encrypt", peer_pubkey, plaintext)

    async def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str:
        return await self._call("nip44_decrypt", peer_pubkey, payload)


class RemoteSigner(Signer):
    backend = "remote"

    def __init__(self, proxy):
        self.proxy = proxy
        self._pubkey: Optional[str] = None

    async def get_public_key(self) -> str:
        if self._pubkey is None:
            pubkey = await self.proxy.get_public_key()
            if not pubkey:
                raise KeyUnavailable("Failed to get user pubkey from bunker")
            self._pubkey = pubkey
        return self._pubkey

    async def sign_event(self, event: SignedEvent) -> SignedEvent:
        return await self.proxy.sign_event(event)

    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self.proxy.nip44_encrypt(peer_pubkey, plaintext)

    async def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str:
        return await self.proxy.nip44_decrypt(peer_pubkey, payload)

    async def close(self) -> None:
        self.proxy.close()


def select_signer(capability: Any = None, proxy=None, secret: Optional[bytes] = None) -> Signer:
    """
    Pick the session signer: an injected capability wins, then a remote
    signer connection, then a local key.
    """
    if capability is not None:
        log.info("Using external capability signer")
        return ExternalCapabilitySigner(capability)
    if proxy is not None:
        log.info("Using remote signer (bunker)")
        return RemoteSigner(proxy)
    if secret is not None:
        log.info("Using local key signer")
        return LocalSigner(secret)
    raise KeyUnavailable("No signing method available. Use an extension, bunker, or local key login.")
