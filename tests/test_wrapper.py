import asyncio
import hashlib
import json
import os

import pytest
from coincurve import PrivateKey

from zkchat_core.codec import MessageCodec, decrypt_authenticated
from zkchat_core.crypto import generate_channel_key, generate_secret_key
from zkchat_core.errors import FormatError, SignerError, UnsupportedFormatError, UnwrapError
from zkchat_core.invite import derive_keypair_from_code
from zkchat_core.signers import ExternalCapabilitySigner, LocalSigner
from zkchat_core.wrapper import KeyWrapper, WrappedKeyEnvelope, unwrap_key_with_secret, wrap_key_with_secret


class FakeCapability:
    """
    Extension-style capability: signs NIP-01 events with BIP-340 Schnorr on
    its own, get_public_key is sync and the rest async.
    """

    def __init__(self):
        self._secret = generate_secret_key()
        self._signer = LocalSigner(self._secret)

    def get_public_key(self):
        return self._signer.pubkey

    async def sign_event(self, event):
        signed = dict(event, pubkey=self._signer.pubkey)
        serialized = json.dumps(
            [0, signed["pubkey"], signed["created_at"], signed["kind"], signed["tags"], signed["content"]],
            separators=(",", ":"), ensure_ascii=False,
        )
        digest = hashlib.sha256(serialized.encode("utf-8")).digest()
        signed["id"] = digest.hex()
        signed["sig"] = PrivateKey(self._secret).sign_schnorr(digest, os.urandom(32)).hex()
        return signed

    async def nip44_encrypt(self, peer, plaintext):
        return await self._signer.nip44_encrypt(peer, plaintext)

    async def nip44_decrypt(self, peer, payload):
        return await self._signer.nip44_decrypt(peer, payload)


class LockedCapability(FakeCapability):
    async def nip44_decrypt(self, peer, payload):
        raise RuntimeError("user rejected")


def test_wrap_unwrap_symmetry_both_directions():
    alice, bob = LocalSigner.generate(), LocalSigner.generate()
    key = generate_channel_key()

    async def scenario():
        to_bob = await KeyWrapper(alice).wrap(key, bob.pubkey)
        to_alice = await KeyWrapper(bob).wrap(key, alice.pubkey)
        return await KeyWrapper(bob).unwrap(to_bob), await KeyWrapper(alice).unwrap(to_alice), to_bob

    a, b, envelope = asyncio.run(scenario())
    assert a == key and b == key
    assert envelope.created_by == alice.pubkey
    assert envelope.v == 1 and envelope.alg == "nip44"


def test_envelope_json_roundtrip():
    envelope = WrappedKeyEnvelope(key="payload", created_by="ab" * 32)
    data = json.loads(envelope.to_json())
    assert set(data) == {"v", "alg", "key", "created_by", "created_at"}
    assert WrappedKeyEnvelope.from_json(envelope.to_json()) == envelope


def test_unsupported_envelope_format():
    bad = json.dumps({"v": 2, "alg": "nip44", "key": "x", "created_by": "ab" * 32})
    with pytest.raises(UnsupportedFormatError) as exc:
        WrappedKeyEnvelope.from_json(bad)
    assert "v2" in str(exc.value)
    with pytest.raises(FormatError):
        WrappedKeyEnvelope.from_json("{not json")
    with pytest.raises(FormatError):
        WrappedKeyEnvelope.from_json(json.dumps({"v": 1, "alg": "nip44"}))


def test_wrap_rejects_bad_recipient():
    with pytest.raises(FormatError):
        asyncio.run(KeyWrapper(LocalSigner.generate()).wrap(generate_channel_key(), "npub1xyz"))


def test_unwrap_for_wrong_identity_names_backend():
    alice, bob, mallory = LocalSigner.generate(), LocalSigner.generate(), LocalSigner.generate()

    async def scenario():
        envelope = await KeyWrapper(alice).wrap(generate_channel_key(), bob.pubkey)
        await KeyWrapper(mallory).unwrap(envelope)

    with pytest.raises(UnwrapError) as exc:
        asyncio.run(scenario())
    assert exc.value.backend == "local"


def test_external_capability_wraps_for_local_peer():
    ext = ExternalCapabilitySigner(FakeCapability())
    local = LocalSigner.generate()
    key = generate_channel_key()

    async def scenario():
        envelope = await KeyWrapper(ext).wrap(key, local.pubkey)
        return await KeyWrapper(local).unwrap(envelope.to_json())

    assert asyncio.run(scenario()) == key


def test_invite_secret_wrapping():
    invite = derive_keypair_from_code("ABCD-EFGH-JKLM")
    creator = LocalSigner.generate()
    key = generate_channel_key()

    envelope = asyncio.run(KeyWrapper(creator).wrap(key, invite.pubkey))
    assert unwrap_key_with_secret(envelope, invite.secret) == key

    # and the reverse: invite secret wraps to a member
    back = wrap_key_with_secret(key, creator.pubkey, invite.secret)
    assert back.created_by == invite.pubkey
    assert asyncio.run(KeyWrapper(creator).unwrap(back)) == key

    with pytest.raises(UnwrapError) as exc:
        unwrap_key_with_secret(envelope, derive_keypair_from_code("ABCD-EFGH-JKLN").secret)
    assert exc.value.backend == "invite"


def test_external_capability_messages_verify():
    ext = ExternalCapabilitySigner(FakeCapability())
    key = generate_channel_key()
    ciphertext = asyncio.run(MessageCodec(ext).encrypt_authenticated("hello", key))
    result = decrypt_authenticated(ciphertext, key)
    assert result.valid and not result.legacy
    assert result.content == "hello"
    assert result.sender == ext.capability.get_public_key()


def test_capability_failure_carries_backend():
    ext = ExternalCapabilitySigner(LockedCapability())
    envelope = asyncio.run(KeyWrapper(LocalSigner.generate()).wrap(generate_channel_key(), ext.capability.get_public_key()))
    with pytest.raises(UnwrapError) as exc:
        asyncio.run(KeyWrapper(ext).unwrap(envelope))
    assert exc.value.backend == "external"
    assert isinstance(exc.value.__cause__, SignerError)
