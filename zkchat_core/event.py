"""
zkchat_core.event
-----------------
Defines SignedEvent, the container that binds message content to an identity.

Key features:
- Deterministic id: sha256 over the compact JSON array
  ``[0, pubkey, created_at, kind, tags, content]``
- ``sig`` is a signature over the id by the private half of ``pubkey``
- Round-trips through plain dicts / JSON for the wire
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, List, Optional
import hashlib
import json

from .utils import canonical_json, now_unix

# Event kind for encrypted message payloads (never published to relays)
ENCRYPTED_MESSAGE_KIND = 9420
# Remote signer request/response events
NOSTR_CONNECT_KIND = 24133

SIGNATURE_FIELDS = ("id", "pubkey", "sig")


@dataclass
class SignedEvent:
    kind: int = ENCRYPTED_MESSAGE_KIND
    created_at: int = field(default_factory=now_unix)
    tags: List[List[str]] = field(default_factory=list)
    content: str = ""
    pubkey: str = ""
    id: str = ""
    sig: str = ""

    def to_signing_bytes(self) -> bytes:
        return canonical_json([0, self.pubkey, self.created_at, self.kind, self.tags, self.content])

    def compute_id(self) -> str:
        return hashlib.sha256(self.to_signing_bytes()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_unsigned_dict(self) -> Dict[str, Any]:
        """Fields handed to a signer that fills in pubkey/id/sig itself."""
        d = {
            "kind": self.kind,
            "created_at": self.created_at,
            "tags": self.tags,
            "content": self.content,
        }
        if self.pubkey:
            d["pubkey"] = self.pubkey
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def make(content: str, kind: int = ENCRYPTED_MESSAGE_KIND, tags: Optional[List[List[str]]] = None) -> "SignedEvent":
        return SignedEvent(kind=kind, created_at=now_unix(), tags=tags or [], content=content)

    @classmethod
    def from_dict(cls, data: dict) -> "SignedEvent":
        return cls(
            kind=data.get("kind", ENCRYPTED_MESSAGE_KIND),
            created_at=data.get("created_at", 0),
            tags=data.get("tags", []),
            content=data.get("content", ""),
            pubkey=data.get("pubkey", ""),
            id=data.get("id", ""),
            sig=data.get("sig", ""),
        )

    @classmethod
    def from_json(cls, text: str) -> "SignedEvent":
        return cls.from_dict(json.loads(text))
