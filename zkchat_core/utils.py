"""
zkchat_core.utils
-----------------
Lightweight helpers for identifiers, timestamps, base64/hex encoding and
canonical JSON serialization. Event ids and wrapped-key envelopes depend on
these being deterministic.
"""

from __future__ import annotations
import base64, binascii, json, time, uuid
from datetime import datetime, timezone
from typing import Any

from .errors import FormatError


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise FormatError(f"Malformed base64: {e}") from e


def hex_to_bytes(s: str) -> bytes:
    try:
        return bytes.fromhex(s)
    except (ValueError, TypeError) as e:
        raise FormatError(f"Malformed hex: {e}") from e


def now_ts() -> str:
    # ISO 8601 in UTC, millisecond precision
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_unix() -> int:
    return int(time.time())


def new_id() -> str:
    return str(uuid.uuid4())


def canonical_json(obj: Any) -> bytes:
    # Deterministic, minimal JSON for hashing
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def short(value: str | None, n: int = 16) -> str:
    """Prefix of a pubkey/hash for log lines."""
    if not value:
        return "<none>"
    return value[:n] + "..."
