"""
zkchat_core.wrapper
-------------------
Moves a symmetric channel key between identities without the server seeing it.

A wrapped key is a NIP-44 ciphertext of the base64 channel key, addressed from
the wrapping identity (``created_by``) to one recipient. Unwrapping re-derives
the same conversation key from the recipient's private half and
``created_by``; ECDH symmetry makes both directions agree.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Union

from . import nip44
from .crypto import get_public_key, is_valid_pubkey
from .errors import FormatError, KeyUnavailable, UnsupportedFormatError, UnwrapError, ZKError
from .logger import get_logger
from .signers import Signer
from .utils import now_ts, short

log = get_logger("ZK.Wrapper")

ENVELOPE_VERSION = 1
ENVELOPE_ALG = "nip44"

_UNWRAP_HINTS = {
    "external": "The key may have been encrypted for a different identity.",
    "remote": "Check your remote signer connection.",
    "local": "Your current identity may not match the one the key was encrypted for.",
}


@dataclass(frozen=True)
class WrappedKeyEnvelope:
    key: str                     # NIP-44 payload
    created_by: str              # hex pubkey of the wrapping identity
    created_at: str = field(default_factory=now_ts)
    v: int = ENVELOPE_VERSION
    alg: str = ENVELOPE_ALG

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.v,
            "alg": self.alg,
            "key": self.key,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WrappedKeyEnvelope":
        if not isinstance(data, dict):
            raise FormatError("Wrapped key must be a JSON object")
        if data.get("v") != ENVELOPE_VERSION or data.get("alg") != ENVELOPE_ALG:
            raise UnsupportedFormatError(data.get("v"), data.get("alg"))
        try:
            return cls(
                key=data["key"],
                created_by=data["created_by"],
                created_at=data.get("created_at", ""),
            )
        except KeyError as e:
            raise FormatError(f"Wrapped key missing field {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "WrappedKeyEnvelope":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise FormatError(f"Malformed wrapped key: {e}") from e
        return cls.from_dict(data)


EnvelopeLike = Union[WrappedKeyEnvelope, str, Dict[str, Any]]


def _coerce(envelope: EnvelopeLike) -> WrappedKeyEnvelope:
    if isinstance(envelope, WrappedKeyEnvelope):
        return envelope
    if isinstance(envelope, dict):
        return WrappedKeyEnvelope.from_dict(envelope)
    return WrappedKeyEnvelope.from_json(envelope)


def _require_pubkey(pubkey: str) -> None:
    if not is_valid_pubkey(pubkey):
        raise FormatError(f"Invalid pubkey: expected 64-char hex string, got {type(pubkey).__name__}")


class KeyWrapper:
    def __init__(self, signer: Signer):
        if signer is None:
            raise KeyUnavailable("No encryption method available. Use an extension, bunker, or local key login.")
        self.signer = signer

    async def wrap(self, channel_key: str, recipient_pubkey: str) -> WrappedKeyEnvelope:
        _require_pubkey(recipient_pubkey)
        log.debug(f"Wrapping key for {short(recipient_pubkey)} via {self.signer.backend}")
        ciphertext = await self.signer.nip44_encrypt(recipient_pubkey, channel_key)
        created_by = await self.signer.get_public_key()
        return WrappedKeyEnvelope(key=ciphertext, created_by=created_by)

    async def unwrap(self, envelope: EnvelopeLike) -> str:
        wrapped = _coerce(envelope)
        backend = self.signer.backend
        log.debug(f"Unwrapping key from {short(wrapped.created_by)} via {backend}")
        try:
            return await self.signer.nip44_decrypt(wrapped.created_by, wrapped.key)
        except (ZKError, ValueError) as e:
            log.error(f"{backend} NIP-44 decrypt failed: {e}")
            raise UnwrapError(f"{backend.capitalize()} NIP-44 decrypt failed: {e}. {_UNWRAP_HINTS.get(backend, '')}".rstrip(),
                              backend=backend) from e


# --------- transient keys (invite-derived) ----------
def wrap_key_with_secret(channel_key: str, recipient_pubkey: str, secret: bytes) -> WrappedKeyEnvelope:
    _require_pubkey(recipient_pubkey)
    ciphertext = nip44.encrypt(channel_key, nip44.get_conversation_key(secret, recipient_pubkey))
    return WrappedKeyEnvelope(key=ciphertext, created_by=get_public_key(secret))


def unwrap_key_with_secret(envelope: EnvelopeLike, secret: bytes) -> str:
    wrapped = _coerce(envelope)
    try:
        return nip44.decrypt(wrapped.key, nip44.get_conversation_key(secret, wrapped.created_by))
    except FormatError as e:
        raise UnwrapError(f"Invite key NIP-44 decrypt failed: {e}", backend="invite") from e
