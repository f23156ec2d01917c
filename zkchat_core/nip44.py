"""
zkchat_core.nip44
-----------------
NIP-44 version 2 payload encryption between two secp256k1 identities.

    conversation_key = HKDF-extract(salt="nip44-v2", ikm=ECDH x)
    chacha_key, chacha_nonce, hmac_key = HKDF-expand(conversation_key, info=nonce, 76)
    payload = base64(0x02 || nonce[32] || chacha20(pad(plaintext)) || hmac[32])

Used for wrapped channel keys and for remote signer requests.
"""

from __future__ import annotations
import math
import os
import struct
from typing import Optional

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand
from cryptography.exceptions import InvalidSignature

from .crypto import shared_secret
from .errors import FormatError, Nip44Error
from .utils import b64e, b64d

VERSION = 2
SALT = b"nip44-v2"
MIN_PLAINTEXT = 1
MAX_PLAINTEXT = 65535


def _hmac_sha256(key: bytes, *parts: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    for p in parts:
        h.update(p)
    return h.finalize()


def get_conversation_key(secret: bytes, peer_pubkey_hex: str) -> bytes:
    return _hmac_sha256(SALT, shared_secret(secret, peer_pubkey_hex))


def _message_keys(conversation_key: bytes, nonce: bytes):
    if len(conversation_key) != 32:
        raise Nip44Error("Invalid conversation key length")
    keys = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return keys[0:32], keys[32:44], keys[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: str) -> bytes:
    raw = plaintext.encode("utf-8")
    n = len(raw)
    if not MIN_PLAINTEXT <= n <= MAX_PLAINTEXT:
        raise Nip44Error(f"Invalid plaintext length: {n}")
    return struct.pack(">H", n) + raw + bytes(calc_padded_len(n) - n)


def _unpad(padded: bytes) -> str:
    (n,) = struct.unpack(">H", padded[:2])
    raw = padded[2:2 + n]
    if n == 0 or len(raw) != n or len(padded) != 2 + calc_padded_len(n):
        raise Nip44Error("Invalid padding")
    return raw.decode("utf-8")


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # RFC 8439 block counter starts at 0, little-endian before the 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
    return cipher.encryptor().update(data)


def encrypt(plaintext: str, conversation_key: bytes, nonce: Optional[bytes] = None) -> str:
    nonce = nonce if nonce is not None else os.urandom(32)
    if len(nonce) != 32:
        raise Nip44Error("Nonce must be 32 bytes")
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = _hmac_sha256(hmac_key, nonce, ciphertext)
    return b64e(bytes([VERSION]) + nonce + ciphertext + mac)


def decrypt(payload: str, conversation_key: bytes) -> str:
    if not isinstance(payload, str) or not payload or payload[0] == "#":
        raise Nip44Error("Unknown encryption version")
    if not 132 <= len(payload) <= 87472:
        raise Nip44Error(f"Invalid payload size: {len(payload)}")
    try:
        data = b64d(payload)
    except FormatError as e:
        raise Nip44Error(str(e)) from e
    if data[0] != VERSION:
        raise Nip44Error(f"Unknown encryption version: {data[0]}")
    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    h = hmac.HMAC(hmac_key, hashes.SHA256())
    h.update(nonce)
    h.update(ciphertext)
    try:
        h.verify(mac)
    except InvalidSignature as e:
        raise Nip44Error("Invalid MAC") from e
    try:
        return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    except (struct.error, UnicodeDecodeError) as e:
        raise Nip44Error(f"Invalid padding: {e}") from e
