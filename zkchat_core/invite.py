"""
zkchat_core.invite
------------------
Invite codes and the key material derived from them.

Everything here is a pure function of the code string: any holder of the
code derives the same lookup hash, the same symmetric key and the same
keypair. The server only ever sees the hash.
"""

from __future__ import annotations
import hashlib
import re
import secrets
from dataclasses import dataclass

from .crypto import get_public_key, hkdf_sha256
from .utils import b64e

INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no I, O, 0, 1
INVITE_LENGTH = 12
INVITE_GROUP = 4
INVITE_KDF_SALT = b"mg-invite-v1"
TEAM_LOOKUP_PREFIX = b"mg-team-invite-lookup-v1:"

_CODE_RE = re.compile(rf"^[{INVITE_ALPHABET}]{{4}}-[{INVITE_ALPHABET}]{{4}}-[{INVITE_ALPHABET}]{{4}}$")


def generate_invite_code() -> str:
    """Random code formatted XXXX-XXXX-XXXX."""
    chars = [secrets.choice(INVITE_ALPHABET) for _ in range(INVITE_LENGTH)]
    groups = ["".join(chars[i:i + INVITE_GROUP]) for i in range(0, INVITE_LENGTH, INVITE_GROUP)]
    return "-".join(groups)


def is_valid_invite_code(code: str) -> bool:
    return isinstance(code, str) and bool(_CODE_RE.match(code))


def hash_invite_code(code: str) -> str:
    """Base64 SHA-256 of the code, the community invite lookup key."""
    return b64e(hashlib.sha256(code.encode("utf-8")).digest())


def hash_team_invite_code(code: str) -> str:
    """
    Hex SHA-256 of the code under a lookup prefix, the team invite lookup key.

    The bare SHA-256 of a team code is the invite private scalar, so the
    lookup hash must never equal it.
    """
    return hashlib.sha256(TEAM_LOOKUP_PREFIX + code.encode("utf-8")).hexdigest()


def derive_key_from_code(code: str) -> str:
    """AES-256 key (base64) from HKDF-SHA256 with a versioned salt."""
    return b64e(hkdf_sha256(code.encode("utf-8"), salt=INVITE_KDF_SALT, info=b"", length=32))


def derive_secret_key_from_code(code: str) -> bytes:
    return hashlib.sha256(code.encode("utf-8")).digest()


def derive_public_key_from_code(code: str) -> str:
    return get_public_key(derive_secret_key_from_code(code))


@dataclass(frozen=True)
class InviteKeypair:
    secret: bytes
    pubkey: str


def derive_keypair_from_code(code: str) -> InviteKeypair:
    secret = derive_secret_key_from_code(code)
    return InviteKeypair(secret=secret, pubkey=get_public_key(secret))
