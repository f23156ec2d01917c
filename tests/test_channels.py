import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from zkchat_core.cache import COMMUNITY_SCOPE, KeyCache, channel_scope, team_scope
from zkchat_core.channels import (
    ChannelKeyChannel, CommunityKeyChannel, DistributionResult, MigrationBatchResult, TeamKeyChannel,
)
from zkchat_core.context import CryptoContext
from zkchat_core.errors import ContextError, KeyUnavailable, ServerError
from zkchat_core.config import Settings
from zkchat_core.server import InMemoryKeyServer, clamp_ttl_days
from zkchat_core.signers import ExternalCapabilitySigner, LocalSigner
from zkchat_core.storage import InMemoryStorage


def _ctx(server, signer=None, storage=None):
    return CryptoContext(signer or LocalSigner.generate(), server, storage=storage).init()


def run(coro):
    return asyncio.run(coro)


def test_end_to_end_bootstrap_three_members_and_outsider():
    server = InMemoryKeyServer()
    storage = InMemoryStorage()
    admin = _ctx(server, storage=storage)
    members = [_ctx(server) for _ in range(3)]
    outsider = _ctx(server)

    users = [{"pubkey": m.signer.pubkey} for m in members] + [{"pubkey": admin.signer.pubkey}]
    result = run(CommunityKeyChannel(admin).bootstrap(users))
    assert result.keys_distributed == 4
    assert result.failed == ()
    assert "community_bootstrap" in [e[1] for e in storage.list_events()]

    admin_key = admin.key_cache.get(COMMUNITY_SCOPE)
    ciphertext = run(CommunityKeyChannel(admin).encrypt_message("welcome aboard"))

    for member in members:
        channel = CommunityKeyChannel(member)
        assert run(channel.fetch_key()) == admin_key
        decrypted = run(channel.decrypt_message(ciphertext))
        assert decrypted.valid and decrypted.content == "welcome aboard"
        assert decrypted.sender == admin.signer.pubkey

    stranger = CommunityKeyChannel(outsider)
    assert run(stranger.fetch_key()) is None
    denied = run(stranger.decrypt_message(ciphertext))
    assert denied.valid is False and denied.content == ""

    status = run(CommunityKeyChannel(admin).status())
    assert status["bootstrapped"] and status["isAdmin"]
    assert not run(stranger.status())["userOnboarded"]


def test_bootstrap_skips_unwrappable_members():
    server = InMemoryKeyServer()
    admin = _ctx(server)
    good = LocalSigner.generate().pubkey
    result = run(CommunityKeyChannel(admin).bootstrap([good, "not-a-pubkey"], service_pubkeys=[good]))
    assert result.keys_distributed == 2
    assert result.failed == ("not-a-pubkey",)
    assert good in server.community_keys


class PickyCapability:
    """Extension that refuses to encrypt for one peer."""

    def __init__(self, refuse):
        self._signer = LocalSigner.generate()
        self.refuse = refuse

    def get_public_key(self):
        return self._signer.pubkey

    def sign_event(self, event):
        raise RuntimeError("signing disabled")

    async def nip44_encrypt(self, peer, plaintext):
        if peer == self.refuse:
            raise RuntimeError("extension popup closed")
        return await self._signer.nip44_encrypt(peer, plaintext)

    async def nip44_decrypt(self, peer, payload):
        return await self._signer.nip44_decrypt(peer, payload)


def test_bootstrap_excludes_member_when_extension_throws():
    server = InMemoryKeyServer()
    good, refused = LocalSigner.generate().pubkey, LocalSigner.generate().pubkey
    admin = _ctx(server, signer=ExternalCapabilitySigner(PickyCapability(refuse=refused)))
    result = run(CommunityKeyChannel(admin).bootstrap([good, refused]))
    assert result.failed == (refused,)
    assert result.keys_distributed == 2
    assert good in server.community_keys and refused not in server.community_keys


def test_community_invite_redeem():
    server = InMemoryKeyServer()
    admin = _ctx(server)
    run(CommunityKeyChannel(admin).bootstrap([]))
    code = run(CommunityKeyChannel(admin).create_invite(single_use=True))
    assert code not in str(server.invites)

    newcomer = _ctx(server)
    key = run(CommunityKeyChannel(newcomer).redeem_invite(code))
    assert key == admin.key_cache.get(COMMUNITY_SCOPE)
    # the re-wrapped copy survives a cold cache
    newcomer.key_cache.clear()
    assert run(CommunityKeyChannel(newcomer).fetch_key()) == key

    with pytest.raises(ServerError) as used:
        run(CommunityKeyChannel(_ctx(server)).redeem_invite(code))
    assert used.value.status == 410

    with pytest.raises(ServerError) as unknown:
        run(CommunityKeyChannel(_ctx(server)).redeem_invite("ZZZZ-ZZZZ-ZZZZ"))
    assert unknown.value.status == 404


def test_invite_expiry_and_admin_listing():
    now = {"t": datetime(2026, 1, 1, tzinfo=timezone.utc)}
    server = InMemoryKeyServer(clock=lambda: now["t"])
    admin = _ctx(server)
    channel = CommunityKeyChannel(admin)
    run(channel.bootstrap([]))
    code = run(channel.create_invite(ttl_days=90))

    invites = run(channel.list_invites())
    assert len(invites) == 1 and invites[0]["single_use"] is False
    assert invites[0]["expires_at"].startswith("2026-01-22")

    now["t"] += timedelta(days=22)
    with pytest.raises(ServerError) as expired:
        run(CommunityKeyChannel(_ctx(server)).redeem_invite(code))
    assert expired.value.status == 410

    assert run(channel.delete_invite(invites[0]["id"]))
    assert run(channel.list_invites()) == []
    assert clamp_ttl_days(0) == 1 and clamp_ttl_days(7) == 7


def test_create_invite_requires_community_key():
    server = InMemoryKeyServer()
    with pytest.raises(KeyUnavailable):
        run(CommunityKeyChannel(_ctx(server)).create_invite())


def test_team_invite_flow():
    server = InMemoryKeyServer()
    creator = _ctx(server)
    team = TeamKeyChannel(creator, "alpha")
    assert run(team.status()) == {"initialized": False, "teamPubkey": None}

    code = run(team.create_invite())
    status = run(team.status())
    assert status["initialized"] and status["teamPubkey"]
    team_key = creator.key_cache.get(team_scope("alpha"))
    assert team_key

    # the server holds only the lookup hash, never the code
    assert code not in str(server.teams)

    joiner = _ctx(server)
    assert run(TeamKeyChannel(joiner, "alpha").redeem_invite(code)) == team_key

    ciphertext = run(TeamKeyChannel(joiner, "alpha").encrypt_message("hello team"))
    creator.key_cache.clear()
    result = run(TeamKeyChannel(creator, "alpha").decrypt_message(ciphertext))
    assert result.valid and result.sender == joiner.signer.pubkey

    # later invites reuse the same key without re-initialising
    second = run(TeamKeyChannel(creator, "alpha").create_invite())
    assert run(TeamKeyChannel(_ctx(server), "alpha").redeem_invite(second)) == team_key
    assert status["teamPubkey"] == run(team.status())["teamPubkey"]


def test_team_without_encryption_and_racing_init():
    server = InMemoryKeyServer()
    assert run(TeamKeyChannel(_ctx(server), "beta").redeem_invite("ABCD-EFGH-JKLM")) is None

    run(TeamKeyChannel(_ctx(server), "beta").create_invite())
    with pytest.raises(KeyUnavailable):
        run(TeamKeyChannel(_ctx(server), "beta").create_invite())


def test_migration_walks_every_batch():
    server = InMemoryKeyServer()
    server.seed_messages([f"old message {i}" for i in range(5)])
    admin = _ctx(server)
    channel = CommunityKeyChannel(admin)
    run(channel.bootstrap([]))

    assert run(channel.migration_status()) == {"pendingCount": 5, "migrationComplete": False}
    page = run(channel.migration_messages(limit=2))
    assert [m["id"] for m in page["messages"]] == [1, 2] and page["hasMore"]

    result = run(channel.migrate(batch_size=2))
    assert result == MigrationBatchResult(updated=5, remaining=0)
    # draining every batch does not mark the migration finished
    assert run(channel.migration_status())["migrationComplete"] is False
    for stored in server.messages.values():
        decrypted = run(channel.decrypt_message(stored["body"]))
        assert decrypted.valid and decrypted.content.startswith("old message")

    assert run(channel.complete_migration())
    assert run(channel.complete_migration())
    assert run(channel.migration_status()) == {"pendingCount": 0, "migrationComplete": True}


def test_key_cache_expiry():
    now = {"t": 1000.0}
    cache = KeyCache(ttl=60, clock=lambda: now["t"])
    cache.put("community", "k1")
    assert cache.get("community") == "k1"
    now["t"] += 61
    assert cache.get("community") is None
    assert len(cache) == 0


def test_teardown_drops_keys_and_signer():
    server = InMemoryKeyServer()
    ctx = _ctx(server)
    run(CommunityKeyChannel(ctx).bootstrap([]))
    run(ctx.teardown())
    assert ctx.key_cache.get(COMMUNITY_SCOPE) is None
    with pytest.raises(KeyUnavailable):
        run(CommunityKeyChannel(ctx).encrypt_message("after logout"))


def test_insecure_origin_refused():
    ctx = CryptoContext(LocalSigner.generate(), InMemoryKeyServer(), Settings(origin="http://chat.example.org"))
    with pytest.raises(ContextError):
        ctx.init()


def test_private_channel_distribution_to_pending_members():
    server = InMemoryKeyServer()
    owner = _ctx(server)
    members = [_ctx(server) for _ in range(2)]
    channel = ChannelKeyChannel(owner, 42)

    with pytest.raises(KeyUnavailable):
        run(channel.distribute_to_member(members[0].signer.pubkey))

    key = run(channel.setup())
    assert owner.key_cache.get(channel_scope("42")) == key
    for i, m in enumerate(members):
        server.add_channel_member("42", m.signer.pubkey, display_name=f"member{i}")
    server.add_channel_member("42", "not-a-pubkey", display_name="broken")
    assert len(run(channel.pending_members())) == 3

    result = run(channel.distribute_to_pending())
    assert set(result.distributed) == {m.signer.pubkey for m in members}
    assert result.failed == ("not-a-pubkey",)
    assert [p["pubkey"] for p in run(channel.pending_members())] == ["not-a-pubkey"]

    ciphertext = run(channel.encrypt_message("private plans"))
    for m in members:
        decrypted = run(ChannelKeyChannel(m, 42).decrypt_message(ciphertext))
        assert decrypted.valid and decrypted.content == "private plans"
    # the community key is not a channel key
    assert run(ChannelKeyChannel(_ctx(server), 42).fetch_key()) is None


def test_distribute_to_pending_with_nobody_waiting():
    server = InMemoryKeyServer()
    channel = ChannelKeyChannel(_ctx(server), "empty")
    assert run(channel.distribute_to_pending()) == DistributionResult()


def test_dm_setup_wraps_to_both_participants_once():
    server = InMemoryKeyServer()
    alice, bob = _ctx(server), _ctx(server)
    dm = ChannelKeyChannel(alice, "dm-7")

    key = run(dm.setup_dm(bob.signer.pubkey))
    assert server.channels["dm-7"]["encrypted"]
    assert run(ChannelKeyChannel(bob, "dm-7").fetch_key()) == key
    # already keyed: no second key is generated
    assert run(dm.setup_dm(bob.signer.pubkey)) == key
    alice.key_cache.clear()
    assert run(dm.setup_dm(bob.signer.pubkey)) == key


def test_note_to_self_is_created_once():
    server = InMemoryKeyServer()
    me = _ctx(server)
    notes = ChannelKeyChannel(me, "notes")
    key = run(notes.ensure_personal())
    me.key_cache.clear()
    assert run(notes.ensure_personal()) == key
    assert list(server.channels["notes"]["keys"]) == [me.signer.pubkey]
    with pytest.raises(ValueError):
        ChannelKeyChannel(me, "")
