"""
zkchat_core.channels
--------------------
Invite-code key channels: how a tenant's symmetric channel key reaches its
members without the key server ever holding it in the clear.

CommunityKeyChannel (symmetric variant)
    The admin bootstraps one community key wrapped to every member. An
    invite carries the key encrypted under an HKDF key derived from the
    invite code; redeeming re-wraps it to the new member's identity.

TeamKeyChannel (asymmetric variant)
    The code deterministically derives a transient keypair. The team key is
    wrapped to the invite pubkey; the invitee derives the invite secret,
    unwraps, re-wraps to their own identity and drops the invite secret.

ChannelKeyChannel (per channel)
    Private channels, DMs and note-to-self each get their own key, generated
    by the owner and wrapped to every member individually.

Only code hashes ever reach the server.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag

from .cache import COMMUNITY_SCOPE, channel_scope, team_scope
from .codec import DecryptResult, decrypt_authenticated
from .config import DEFAULT_INVITE_TTL_DAYS, MIGRATION_BATCH_SIZE
from .context import CryptoContext
from .crypto import decrypt_message, encrypt_message, generate_channel_key
from .errors import FormatError, KeyUnavailable, UnwrapError, ZKError
from .invite import (
    derive_key_from_code, derive_keypair_from_code, generate_invite_code, hash_invite_code, hash_team_invite_code,
)
from .logger import get_logger
from .utils import short
from .wrapper import WrappedKeyEnvelope, unwrap_key_with_secret

log = get_logger("ZK.Channels")


@dataclass(frozen=True)
class BootstrapResult:
    keys_distributed: int
    failed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MigrationBatchResult:
    updated: int
    remaining: int


@dataclass(frozen=True)
class DistributionResult:
    distributed: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()


UserLike = Union[str, Dict[str, Any]]


def _pubkey_of(user: UserLike) -> str:
    if isinstance(user, dict):
        return user.get("pubkey", "")
    return user


class _KeyChannel:
    scope: str = ""

    def __init__(self, ctx: CryptoContext):
        self.ctx = ctx

    @property
    def server(self):
        return self.ctx.server

    async def _server(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def _own_pubkey(self) -> str:
        return await self.ctx.signer.get_public_key()

    async def _fetch_wrapped(self, pubkey: str) -> Optional[str]:
        raise NotImplementedError

    async def fetch_key(self) -> Optional[str]:
        """Channel key from the session cache, else unwrapped from the server; None if not a member."""
        cached = self.ctx.key_cache.get(self.scope)
        if cached:
            return cached
        pubkey = await self._own_pubkey()
        wrapped = await self._fetch_wrapped(pubkey)
        if not wrapped:
            log.info(f"No stored key for {short(pubkey)} in {self.scope}")
            return None
        key = await self.ctx.wrapper.unwrap(wrapped)
        self.ctx.key_cache.put(self.scope, key)
        return key

    async def _require_key(self) -> str:
        key = await self.fetch_key()
        if not key:
            raise KeyUnavailable(f"No channel key available for {self.scope}")
        return key

    async def encrypt_message(self, content: str) -> str:
        key = await self._require_key()
        return await self.ctx.codec.encrypt_authenticated(content, key)

    async def decrypt_message(self, ciphertext: str) -> DecryptResult:
        try:
            key = await self.fetch_key()
        except (UnwrapError, FormatError) as e:
            log.error(f"Cannot decrypt in {self.scope}: {e}")
            return DecryptResult.invalid()
        if not key:
            return DecryptResult.invalid()
        return decrypt_authenticated(ciphertext, key)


class CommunityKeyChannel(_KeyChannel):
    scope = COMMUNITY_SCOPE

    async def status(self) -> Dict[str, Any]:
        return await self._server(self.server.community_status, await self._own_pubkey())

    async def _fetch_wrapped(self, pubkey: str) -> Optional[str]:
        return await self._server(self.server.fetch_community_key, pubkey)

    # ------------------------------------------------------------------
    # Admin: bootstrap
    # ------------------------------------------------------------------
    async def bootstrap(self, users: Iterable[UserLike] = (), service_pubkeys: Iterable[str] = ()) -> BootstrapResult:
        """
        Generate the community key and wrap it to the admin, every member and
        each service identity. A member whose wrap fails is skipped and
        reported in ``failed``; the server submit is a single call.
        """
        channel_key = generate_channel_key()
        admin = await self._own_pubkey()
        admin_wrapped = await self.ctx.wrapper.wrap(channel_key, admin)

        recipients: List[str] = []
        for pubkey in [_pubkey_of(u) for u in users] + list(service_pubkeys):
            if pubkey != admin and pubkey not in recipients:
                recipients.append(pubkey)

        user_keys: List[Dict[str, str]] = []
        failed: List[str] = []
        for pubkey in recipients:
            try:
                wrapped = await self.ctx.wrapper.wrap(channel_key, pubkey)
            except (ZKError, ValueError) as e:
                log.error(f"Failed to wrap community key for {short(pubkey)}: {e}")
                failed.append(pubkey)
                continue
            user_keys.append({"userPubkey": pubkey, "wrappedKey": wrapped.to_json()})

        distributed = await self._server(self.server.bootstrap_community, admin, admin_wrapped.to_json(), user_keys)
        self.ctx.key_cache.put(self.scope, channel_key)
        self.ctx.audit("community_bootstrap", {"admin": admin, "keys_distributed": distributed, "failed": len(failed)})
        log.info(f"Community bootstrapped: {distributed} keys distributed, {len(failed)} failed")
        return BootstrapResult(keys_distributed=distributed, failed=tuple(failed))

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------
    async def create_invite(self, single_use: bool = False, ttl_days: int = DEFAULT_INVITE_TTL_DAYS) -> str:
        channel_key = await self._require_key()
        code = generate_invite_code()
        code_hash = hash_invite_code(code)
        encrypted_key = encrypt_message(channel_key, derive_key_from_code(code))
        await self._server(self.server.create_invite, code_hash, encrypted_key, single_use, ttl_days,
                           await self._own_pubkey())
        self.ctx.audit("community_invite_created", {"code_hash": code_hash, "single_use": single_use})
        log.info(f"Created invite hash={code_hash[:10]}... single_use={single_use} ttl_days={ttl_days}")
        return code

    async def list_invites(self) -> List[Dict[str, Any]]:
        return await self._server(self.server.list_invites)

    async def delete_invite(self, invite_id: int) -> bool:
        return await self._server(self.server.delete_invite, invite_id)

    async def redeem_invite(self, code: str) -> str:
        code = code.strip()
        code_hash = hash_invite_code(code)
        pubkey = await self._own_pubkey()
        log.info(f"Redeeming invite, hash={code_hash[:10]}...")
        encrypted_key = await self._server(self.server.redeem_invite, code_hash, pubkey)
        try:
            channel_key = decrypt_message(encrypted_key, derive_key_from_code(code))
        except (FormatError, InvalidTag) as e:
            raise UnwrapError(f"Invite key could not be decrypted: {type(e).__name__}", backend="invite") from e

        wrapped = await self.ctx.wrapper.wrap(channel_key, pubkey)
        await self._server(self.server.store_community_key, pubkey, wrapped.to_json())
        self.ctx.key_cache.put(self.scope, channel_key)
        self.ctx.audit("community_invite_redeemed", {"code_hash": code_hash, "user": pubkey})
        return channel_key

    # ------------------------------------------------------------------
    # Migration of plaintext history
    # ------------------------------------------------------------------
    async def migration_status(self) -> Dict[str, Any]:
        return await self._server(self.server.migration_status)

    async def migration_messages(self, limit: int = MIGRATION_BATCH_SIZE,
                                 after_id: Optional[int] = None) -> Dict[str, Any]:
        return await self._server(self.server.migration_messages, limit, after_id)

    async def submit_migration_batch(self, messages: List[Dict[str, Any]]) -> MigrationBatchResult:
        channel_key = await self._require_key()
        encrypted = [
            {"id": m["id"], "body": await self.ctx.codec.encrypt_authenticated(m["body"], channel_key)}
            for m in messages
        ]
        result = await self._server(self.server.submit_migration_batch, encrypted) or {}
        return MigrationBatchResult(updated=int(result.get("updated", 0)), remaining=int(result.get("remaining", 0)))

    async def migrate(self, batch_size: int = MIGRATION_BATCH_SIZE) -> MigrationBatchResult:
        """Encrypt every pending message, walking the after-id cursor to the end."""
        after_id = None
        updated = 0
        last = MigrationBatchResult(updated=0, remaining=0)
        while True:
            page = await self.migration_messages(batch_size, after_id)
            messages = page.get("messages") or []
            if not messages:
                break
            last = await self.submit_migration_batch(messages)
            updated += last.updated
            after_id = messages[-1]["id"]
            log.info(f"Migration batch: updated={last.updated} remaining={last.remaining}")
            if not page.get("hasMore"):
                break
        return MigrationBatchResult(updated=updated, remaining=last.remaining)

    async def complete_migration(self) -> bool:
        done = await self._server(self.server.complete_migration)
        self.ctx.audit("community_migration_complete", {})
        return done


class TeamKeyChannel(_KeyChannel):
    def __init__(self, ctx: CryptoContext, team_slug: str):
        if not team_slug:
            raise ValueError("No team selected")
        super().__init__(ctx)
        self.team_slug = team_slug
        self.scope = team_scope(team_slug)

    async def status(self) -> Dict[str, Any]:
        return await self._server(self.server.team_encryption_status, self.team_slug)

    async def _fetch_wrapped(self, pubkey: str) -> Optional[str]:
        return await self._server(self.server.fetch_team_key, self.team_slug, pubkey)

    async def store_user_key(self, envelope: Union[WrappedKeyEnvelope, str]) -> None:
        if isinstance(envelope, WrappedKeyEnvelope):
            envelope = envelope.to_json()
        await self._server(self.server.store_team_key, self.team_slug, await self._own_pubkey(), envelope)

    async def create_invite(self, code: Optional[str] = None) -> str:
        """
        Store the team key wrapped to the invite-derived pubkey. The first
        invite for a team generates the team key and anchors team encryption
        on the server with that invite pubkey.
        """
        code = code or generate_invite_code()
        invite = derive_keypair_from_code(code)
        creator = await self._own_pubkey()

        team_key = await self.fetch_key()
        if not team_key:
            log.info(f"Generating new team key for first invite in {self.team_slug}")
            team_key = generate_channel_key()
            init = await self._server(self.server.init_team_encryption, self.team_slug, invite.pubkey)
            if init.get("alreadyInitialized"):
                raise KeyUnavailable(f"Team {self.team_slug} already has encryption but you hold no team key")
            await self.store_user_key(await self.ctx.wrapper.wrap(team_key, creator))
            self.ctx.key_cache.put(self.scope, team_key)

        wrapped = await self.ctx.wrapper.wrap(team_key, invite.pubkey)
        code_hash = hash_team_invite_code(code)
        await self._server(self.server.store_invite_key, self.team_slug, code_hash, wrapped.to_json(), creator)
        self.ctx.audit("team_invite_created", {"team": self.team_slug, "code_hash": code_hash})
        log.info(f"Stored invite key for {self.team_slug}, invite pubkey={short(invite.pubkey)}")
        return code

    async def redeem_invite(self, code: str) -> Optional[str]:
        code = code.strip()
        invite = derive_keypair_from_code(code)
        record = await self._server(self.server.fetch_invite_key, self.team_slug, hash_team_invite_code(code))
        encrypted = record.get("encryptedTeamKey")
        creator = record.get("creatorPubkey")
        if not encrypted or not creator:
            log.info(f"No encrypted team key for invite in {self.team_slug}")
            return None
        log.info(f"Got team key from creator {short(creator)}")

        team_key = unwrap_key_with_secret(encrypted, invite.secret)
        del invite

        pubkey = await self._own_pubkey()
        wrapped = await self.ctx.wrapper.wrap(team_key, pubkey)
        await self._server(self.server.store_team_key, self.team_slug, pubkey, wrapped.to_json())
        self.ctx.key_cache.put(self.scope, team_key)
        self.ctx.audit("team_invite_redeemed", {"team": self.team_slug, "user": pubkey})
        return team_key


class ChannelKeyChannel(_KeyChannel):
    def __init__(self, ctx: CryptoContext, channel_id: Union[int, str]):
        if channel_id in (None, ""):
            raise ValueError("No channel selected")
        super().__init__(ctx)
        self.channel_id = str(channel_id)
        self.scope = channel_scope(self.channel_id)

    async def _fetch_wrapped(self, pubkey: str) -> Optional[str]:
        return await self._server(self.server.fetch_channel_key, self.channel_id, pubkey)

    async def setup(self, owner_pubkey: Optional[str] = None) -> str:
        """Generate a fresh key for the channel and wrap it to its owner (by default the caller)."""
        owner = owner_pubkey or await self._own_pubkey()
        channel_key = generate_channel_key()
        wrapped = await self.ctx.wrapper.wrap(channel_key, owner)
        await self._server(self.server.store_channel_key, self.channel_id, owner, wrapped.to_json(), 1)
        self.ctx.key_cache.put(self.scope, channel_key)
        self.ctx.audit("channel_key_created", {"channel": self.channel_id, "owner": owner})
        log.info(f"Channel {self.channel_id} encryption set up for {short(owner)}")
        return channel_key

    async def ensure_personal(self) -> str:
        """Note-to-self: reuse the caller's key or create one wrapped only to them."""
        return await self.fetch_key() or await self.setup()

    async def distribute_to_member(self, member_pubkey: str) -> None:
        channel_key = await self._require_key()
        wrapped = await self.ctx.wrapper.wrap(channel_key, member_pubkey)
        await self._server(self.server.store_channel_key, self.channel_id, member_pubkey, wrapped.to_json())
        self.ctx.audit("channel_key_distributed", {"channel": self.channel_id, "member": member_pubkey})

    async def pending_members(self) -> List[Dict[str, Any]]:
        return await self._server(self.server.pending_key_members, self.channel_id)

    async def distribute_to_pending(self) -> DistributionResult:
        """
        Wrap the channel key to every member the server lists as keyless. A
        member whose wrap or store fails is reported in ``failed``; the rest
        still get their key.
        """
        pending = await self.pending_members()
        if not pending:
            return DistributionResult()
        await self._require_key()
        log.info(f"Distributing keys to {len(pending)} pending members of {self.channel_id}")

        distributed: List[str] = []
        failed: List[str] = []
        for member in pending:
            pubkey = member.get("pubkey", "")
            label = member.get("displayName") or member.get("npub") or short(pubkey)
            try:
                await self.distribute_to_member(pubkey)
            except (ZKError, ValueError) as e:
                log.error(f"Failed to distribute key to {label}: {e}")
                failed.append(pubkey)
                continue
            distributed.append(pubkey)
        return DistributionResult(distributed=tuple(distributed), failed=tuple(failed))

    async def setup_dm(self, other_pubkey: str) -> str:
        """Key a two-party DM: one key wrapped to both participants, stored in one batch."""
        existing = await self.fetch_key()
        if existing:
            log.info(f"DM {self.channel_id} already encrypted")
            return existing
        me = await self._own_pubkey()
        channel_key = generate_channel_key()
        keys = [
            {"userPubkey": pubkey, "encryptedKey": (await self.ctx.wrapper.wrap(channel_key, pubkey)).to_json()}
            for pubkey in (me, other_pubkey)
        ]
        await self._server(self.server.store_channel_keys, self.channel_id, keys, True)
        self.ctx.key_cache.put(self.scope, channel_key)
        self.ctx.audit("dm_key_created", {"channel": self.channel_id, "peer": other_pubkey})
        log.info(f"DM {self.channel_id} encryption set up")
        return channel_key
