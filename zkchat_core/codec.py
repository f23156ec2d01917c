"""
zkchat_core.codec
-----------------
Authenticated message codec: sign → encrypt, decrypt → verify.

Decrypted plaintext is classified into exactly one of:

- SignedEventV1: a signed event; ``valid`` is the signature check
- LegacyPlainJson: a JSON object with ``content`` but no signature fields,
  written before messages were signed; decryption success is the only
  authentication signal, so it is reported ``valid`` with ``legacy=True``
- LegacyRawText: plaintext that is not a JSON object; same policy

Decryption never raises past ``decrypt_authenticated``: a wrong key or a
corrupt ciphertext yields ``DecryptResult(valid=False)``.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag

from .crypto import decrypt_message, encrypt_message, verify_event
from .errors import FormatError, KeyUnavailable, ZKError
from .event import ENCRYPTED_MESSAGE_KIND, SIGNATURE_FIELDS, SignedEvent
from .logger import get_logger
from .signers import Signer

log = get_logger("ZK.Codec")


@dataclass(frozen=True)
class DecryptResult:
    valid: bool
    content: str
    sender: str
    timestamp: int
    legacy: bool = False

    @classmethod
    def invalid(cls) -> "DecryptResult":
        return cls(valid=False, content="", sender="", timestamp=0)


@dataclass(frozen=True)
class SignedEventV1:
    event: SignedEvent

    def to_result(self) -> DecryptResult:
        valid = verify_event(self.event)
        if not valid:
            log.warning(f"Event signature verification failed: id={str(self.event.id)[:16]}... "
                        f"pubkey={str(self.event.pubkey)[:16]}...")
        return DecryptResult(valid=valid, content=self.event.content, sender=self.event.pubkey,
                             timestamp=self.event.created_at)


@dataclass(frozen=True)
class LegacyPlainJson:
    data: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    def to_result(self) -> DecryptResult:
        content = self.data.get("content")
        sender = self.data.get("pubkey")
        ts = self.data.get("created_at")
        return DecryptResult(
            valid=True,
            content=content if isinstance(content, str) else self.raw,
            sender=sender if isinstance(sender, str) else "",
            timestamp=ts if isinstance(ts, int) else 0,
            legacy=True,
        )


@dataclass(frozen=True)
class LegacyRawText:
    text: str

    def to_result(self) -> DecryptResult:
        return DecryptResult(valid=True, content=self.text, sender="", timestamp=0, legacy=True)


Payload = Union[SignedEventV1, LegacyPlainJson, LegacyRawText]


def _is_signed_event(data: Dict[str, Any]) -> bool:
    return all(data.get(f) for f in SIGNATURE_FIELDS) and "kind" in data


def classify_payload(text: str) -> Payload:
    try:
        data = json.loads(text)
    except (ValueError, RecursionError, TypeError):
        # oversized integers and deep nesting fail here too; fall back to text
        return LegacyRawText(text)
    if not isinstance(data, dict):
        return LegacyRawText(text)
    if _is_signed_event(data):
        return SignedEventV1(SignedEvent.from_dict(data))
    return LegacyPlainJson(data=data, raw=text)


def verify_payload(text: str) -> DecryptResult:
    return classify_payload(text).to_result()


class MessageCodec:
    def __init__(self, signer: Signer):
        self.signer = signer

    async def sign(self, content: str, kind: int = ENCRYPTED_MESSAGE_KIND) -> SignedEvent:
        if self.signer is None:
            raise KeyUnavailable("No signing method available. Use an extension, bunker, or local key login.")
        return await self.signer.sign_event(SignedEvent.make(content, kind=kind))

    async def encrypt_authenticated(self, content: str, channel_key: str) -> str:
        event = await self.sign(content)
        return encrypt_message(event.to_json(), channel_key)

    async def decrypt_authenticated(self, ciphertext: str, channel_key: str) -> DecryptResult:
        return decrypt_authenticated(ciphertext, channel_key)


def decrypt_authenticated(ciphertext: str, channel_key: str) -> DecryptResult:
    try:
        plaintext = decrypt_message(ciphertext, channel_key)
    except (FormatError, InvalidTag, UnicodeDecodeError, ValueError, TypeError) as e:
        log.error(f"Failed to decrypt authenticated message: {type(e).__name__}: {e}")
        return DecryptResult.invalid()
    try:
        return verify_payload(plaintext)
    except (ZKError, ValueError, RecursionError, TypeError, AttributeError) as e:
        log.warning(f"Unclassifiable plaintext, showing as raw text: {type(e).__name__}")
        return LegacyRawText(plaintext).to_result()
