from __future__ import annotations
from typing import Tuple, Optional
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from coincurve import PrivateKey, PublicKeyXOnly
import os
from .errors import FormatError
from .event import SignedEvent
from .utils import b64e, b64d, hex_to_bytes
"""
zkchat_core.crypto
------------------
Implements the cryptographic primitives for zkchat:

- AES-256-GCM: channel message encryption (nonce || ciphertext || tag)
- PBKDF2 / HKDF: key derivation from PINs and invite codes
- secp256k1: identity keys and ECDH key agreement
- BIP-340 Schnorr (coincurve): event signatures, interoperable with
  NIP-07 extensions and NIP-46 remote signers
- Event helpers: sign_event(), verify_event()

Public keys are the 32-byte x coordinate of the even-y point, hex encoded.
"""

CURVE = ec.SECP256K1()
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

NONCE_LENGTH = 12
CHANNEL_KEY_LENGTH = 32


# --------- AES-GCM (channel messages) ----------
def generate_channel_key() -> str:
    """Random AES-256 key, base64 encoded."""
    return b64e(AESGCM.generate_key(bit_length=256))


def _channel_key_bytes(key_b64: str) -> bytes:
    key = b64d(key_b64)
    if len(key) != CHANNEL_KEY_LENGTH:
        raise FormatError(f"Channel key must be {CHANNEL_KEY_LENGTH} bytes, got {len(key)}")
    return key


def aead_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes]:
    aes = AESGCM(key)
    nonce = os.urandom(NONCE_LENGTH)
    ct = aes.encrypt(nonce, plaintext, aad)
    return nonce, ct


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    aes = AESGCM(key)
    return aes.decrypt(nonce, ciphertext, aad)


def encrypt_message(plaintext: str, key_b64: str) -> str:
    nonce, ct = aead_encrypt(_channel_key_bytes(key_b64), plaintext.encode("utf-8"))
    return b64e(nonce + ct)


def decrypt_message(ciphertext_b64: str, key_b64: str) -> str:
    """Raises FormatError on malformed input and InvalidTag on a wrong key or tampering."""
    combined = b64d(ciphertext_b64)
    if len(combined) < NONCE_LENGTH + 16:
        raise FormatError(f"Ciphertext too short: {len(combined)} bytes")
    pt = aead_decrypt(_channel_key_bytes(key_b64), combined[:NONCE_LENGTH], combined[NONCE_LENGTH:])
    return pt.decode("utf-8")


# --------- KDFs ----------
def pbkdf2_sha256(password: bytes, salt: bytes, iterations: int, length: int = 32) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=length, salt=salt, iterations=iterations)
    return kdf.derive(password)


def hkdf_sha256(ikm: bytes, salt: Optional[bytes], info: bytes = b"", length: int = 32) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info)
    return hkdf.derive(ikm)


# --------- secp256k1 identities ----------
def _scalar(secret: bytes) -> int:
    if not isinstance(secret, (bytes, bytearray)) or len(secret) != 32:
        raise FormatError("Secret key must be 32 bytes")
    d = int.from_bytes(secret, "big")
    if not 0 < d < CURVE_ORDER:
        raise FormatError("Secret key out of range for secp256k1")
    return d


def _private_key(secret: bytes) -> ec.EllipticCurvePrivateKey:
    # Normalise to the scalar whose public point has even y so that the
    # x-only public key lifts back to the same point.
    d = _scalar(secret)
    sk = ec.derive_private_key(d, CURVE)
    if sk.public_key().public_numbers().y & 1:
        sk = ec.derive_private_key(CURVE_ORDER - d, CURVE)
    return sk


def _lift_x(pubkey_hex: str) -> ec.EllipticCurvePublicKey:
    if not is_valid_pubkey(pubkey_hex):
        raise FormatError(f"Invalid pubkey: expected 64-char hex string, got {pubkey_hex!r:.24}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, b"\x02" + bytes.fromhex(pubkey_hex))
    except ValueError as e:
        raise FormatError(f"Pubkey is not a point on secp256k1: {e}") from e


def is_valid_pubkey(pubkey_hex) -> bool:
    if not isinstance(pubkey_hex, str) or len(pubkey_hex) != 64:
        return False
    try:
        bytes.fromhex(pubkey_hex)
    except ValueError:
        return False
    return True


def generate_secret_key() -> bytes:
    sk = ec.generate_private_key(CURVE)
    return sk.private_numbers().private_value.to_bytes(32, "big")


def secret_key_from_hex(secret_hex: str) -> bytes:
    secret = hex_to_bytes(secret_hex)
    _scalar(secret)
    return secret


def get_public_key(secret: bytes) -> str:
    x = _private_key(secret).public_key().public_numbers().x
    return x.to_bytes(32, "big").hex()


def shared_secret(secret: bytes, peer_pubkey_hex: str) -> bytes:
    """ECDH x coordinate; identical from either side of the pair."""
    return _private_key(secret).exchange(ec.ECDH(), _lift_x(peer_pubkey_hex))


# --------- Event helpers (BIP-340) ----------
def schnorr_sign(message: bytes, secret: bytes) -> bytes:
    _scalar(secret)
    return PrivateKey(bytes(secret)).sign_schnorr(message, os.urandom(32))


def schnorr_verify(pubkey_hex: str, message: bytes, sig: bytes) -> bool:
    if not is_valid_pubkey(pubkey_hex) or len(sig) != 64 or len(message) != 32:
        return False
    try:
        return PublicKeyXOnly(bytes.fromhex(pubkey_hex)).verify(sig, message)
    except (ValueError, TypeError):
        return False


def sign_event(event: SignedEvent, secret: bytes) -> SignedEvent:
    event.pubkey = get_public_key(secret)
    event.id = event.compute_id()
    event.sig = schnorr_sign(bytes.fromhex(event.id), secret).hex()
    return event


def verify_event(event: SignedEvent) -> bool:
    try:
        if event.id != event.compute_id():
            return False
        return schnorr_verify(event.pubkey, bytes.fromhex(event.id), bytes.fromhex(event.sig))
    except (ValueError, TypeError):
        return False
