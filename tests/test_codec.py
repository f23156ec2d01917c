import asyncio
import json

from zkchat_core.codec import (
    LegacyPlainJson, LegacyRawText, MessageCodec, SignedEventV1, classify_payload, decrypt_authenticated,
)
from zkchat_core.crypto import encrypt_message, generate_channel_key
from zkchat_core.signers import LocalSigner


def _encrypt(signer, content, key):
    return asyncio.run(MessageCodec(signer).encrypt_authenticated(content, key))


def test_authenticated_roundtrip():
    signer, key = LocalSigner.generate(), generate_channel_key()
    result = decrypt_authenticated(_encrypt(signer, "ship it", key), key)
    assert result.valid and not result.legacy
    assert result.content == "ship it"
    assert result.sender == signer.pubkey
    assert result.timestamp > 0


def test_tampered_signature_reports_invalid_with_content():
    signer, key = LocalSigner.generate(), generate_channel_key()
    event = asyncio.run(MessageCodec(signer).sign("pay alice 5"))
    forged = event.to_dict()
    forged["content"] = "pay mallory 500"
    result = decrypt_authenticated(encrypt_message(json.dumps(forged), key), key)
    assert result.valid is False
    assert result.content == "pay mallory 500"
    assert result.sender == signer.pubkey


def test_legacy_raw_text():
    key = generate_channel_key()
    result = decrypt_authenticated(encrypt_message("hello from before signing", key), key)
    assert result.valid and result.legacy
    assert result.content == "hello from before signing"
    assert result.sender == ""


def test_legacy_plain_json():
    key = generate_channel_key()
    result = decrypt_authenticated(encrypt_message(json.dumps({"content": "old msg", "created_at": 42}), key), key)
    assert result.valid and result.legacy
    assert result.content == "old msg"
    assert result.timestamp == 42


def test_wrong_key_is_invalid_not_raised():
    signer = LocalSigner.generate()
    ct = _encrypt(signer, "members only", generate_channel_key())
    result = decrypt_authenticated(ct, generate_channel_key())
    assert result.valid is False
    assert result.content == ""
    assert decrypt_authenticated("garbage!", generate_channel_key()).valid is False


def test_classify_payload_variants():
    assert isinstance(classify_payload("plain"), LegacyRawText)
    assert isinstance(classify_payload("[1, 2]"), LegacyRawText)
    assert isinstance(classify_payload('{"content": "x"}'), LegacyPlainJson)
    signed = asyncio.run(MessageCodec(LocalSigner.generate()).sign("x"))
    assert isinstance(classify_payload(signed.to_json()), SignedEventV1)


def test_huge_integer_plaintext_falls_back_to_raw_text():
    key = generate_channel_key()
    digits = "7" * 5000
    result = decrypt_authenticated(encrypt_message(digits, key), key)
    assert result.valid and result.legacy
    assert result.content == digits


def test_deeply_nested_plaintext_falls_back_to_raw_text():
    key = generate_channel_key()
    nested = "[" * 100000 + "]" * 100000
    result = decrypt_authenticated(encrypt_message(nested, key), key)
    assert result.legacy
    assert result.content == nested
    assert isinstance(classify_payload(nested), LegacyRawText)
