"""
zkchat_core.server
------------------
Clients for the key server: the store of wrapped keys, invite records and
team encryption state. The server never sees a plaintext channel key or
invite code.

- HTTPKeyServer: JSON over HTTP with a bearer session token (requests)
- InMemoryKeyServer: reference behaviour for tests and local runs

Both are synchronous; the key channels call them from a worker thread.
"""

from __future__ import annotations
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import DEFAULT_INVITE_TTL_DAYS
from .errors import ServerError
from .logger import get_logger
from .utils import now_ts, short

log = get_logger("ZK.Server")

MIN_INVITE_TTL_DAYS = 1
MAX_INVITE_TTL_DAYS = 21


def clamp_ttl_days(ttl_days: int) -> int:
    return max(MIN_INVITE_TTL_DAYS, min(MAX_INVITE_TTL_DAYS, int(ttl_days)))


class KeyServer(ABC):
    # community
    @abstractmethod
    def community_status(self, user_pubkey: str) -> Dict[str, Any]: ...

    @abstractmethod
    def bootstrap_community(self, admin_pubkey: str, admin_key: str, user_keys: List[Dict[str, str]]) -> int: ...

    @abstractmethod
    def fetch_community_key(self, user_pubkey: str) -> Optional[str]: ...

    @abstractmethod
    def store_community_key(self, user_pubkey: str, wrapped_key: str) -> None: ...

    # community invites
    @abstractmethod
    def create_invite(self, code_hash: str, encrypted_key: str, single_use: bool, ttl_days: int,
                      created_by: str = "") -> Dict[str, Any]: ...

    @abstractmethod
    def redeem_invite(self, code_hash: str, user_pubkey: str = "") -> str: ...

    @abstractmethod
    def list_invites(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def delete_invite(self, invite_id: int) -> bool: ...

    # teams
    @abstractmethod
    def team_encryption_status(self, team_slug: str) -> Dict[str, Any]: ...

    @abstractmethod
    def init_team_encryption(self, team_slug: str, team_pubkey: str) -> Dict[str, Any]: ...

    @abstractmethod
    def fetch_team_key(self, team_slug: str, user_pubkey: str) -> Optional[str]: ...

    @abstractmethod
    def store_team_key(self, team_slug: str, user_pubkey: str, wrapped_key: str) -> None: ...

    @abstractmethod
    def store_invite_key(self, team_slug: str, code_hash: str, encrypted_team_key: str,
                         creator_pubkey: str) -> None: ...

    @abstractmethod
    def fetch_invite_key(self, team_slug: str, code_hash: str) -> Dict[str, Any]: ...

    # private channels, DMs, note-to-self
    @abstractmethod
    def fetch_channel_key(self, channel_id: str, user_pubkey: str) -> Optional[str]: ...

    @abstractmethod
    def store_channel_key(self, channel_id: str, user_pubkey: str, wrapped_key: str,
                          key_version: Optional[int] = None) -> Dict[str, Any]: ...

    @abstractmethod
    def store_channel_keys(self, channel_id: str, keys: List[Dict[str, str]],
                           set_encrypted: bool = False) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def pending_key_members(self, channel_id: str) -> List[Dict[str, Any]]: ...

    # migration
    @abstractmethod
    def migration_status(self) -> Dict[str, Any]: ...

    @abstractmethod
    def migration_messages(self, limit: int = 100, after_id: Optional[int] = None) -> Dict[str, Any]: ...

    @abstractmethod
    def submit_migration_batch(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]: ...

    @abstractmethod
    def complete_migration(self) -> bool: ...


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
class HTTPKeyServer(KeyServer):
    """
    The session token identifies the caller; pubkey arguments that the
    server derives from the session are not sent.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 team_slug: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.team_slug = team_slug
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _call(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        log.debug(f"[KEYSERVER] {method} {path}")
        try:
            res = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log.error(f"[KEYSERVER] {method} {path} failed: {e}")
            raise ServerError(str(e)) from e
        data = None
        if res.content:
            try:
                data = res.json()
            except ValueError:
                data = None
        if not res.ok:
            message = data.get("error") if isinstance(data, dict) and data.get("error") else f"Server error: {res.status_code}"
            log.warning(f"[KEYSERVER] {method} {path} → {res.status_code}: {message}")
            raise ServerError(message, status=res.status_code)
        return data

    def _team(self, team_slug: str, path: str) -> str:
        return f"/t/{team_slug}/api/team{path}"

    def community_status(self, user_pubkey: str) -> Dict[str, Any]:
        return self._call("GET", "/api/community/status")

    def bootstrap_community(self, admin_pubkey: str, admin_key: str, user_keys: List[Dict[str, str]]) -> int:
        data = self._call("POST", "/api/community/bootstrap", json={"adminKey": admin_key, "userKeys": user_keys})
        return int((data or {}).get("keysDistributed", 0))

    def fetch_community_key(self, user_pubkey: str) -> Optional[str]:
        try:
            data = self._call("GET", "/api/community/key")
        except ServerError as e:
            if e.status == 404:
                return None
            raise
        return (data or {}).get("encrypted_key")

    def store_community_key(self, user_pubkey: str, wrapped_key: str) -> None:
        self._call("POST", "/api/community/key", json={"userPubkey": user_pubkey, "wrappedKey": wrapped_key})

    def create_invite(self, code_hash: str, encrypted_key: str, single_use: bool, ttl_days: int,
                      created_by: str = "") -> Dict[str, Any]:
        body = {"codeHash": code_hash, "encryptedKey": encrypted_key, "singleUse": single_use, "ttlDays": ttl_days}
        return self._call("POST", "/api/invites", json=body) or {}

    def redeem_invite(self, code_hash: str, user_pubkey: str = "") -> str:
        data = self._call("POST", "/api/invites/redeem", json={"codeHash": code_hash})
        if not isinstance(data, dict) or not data.get("encrypted_key"):
            raise ServerError("Invalid server response - no encrypted key")
        return data["encrypted_key"]

    def list_invites(self) -> List[Dict[str, Any]]:
        return self._call("GET", "/api/invites") or []

    def delete_invite(self, invite_id: int) -> bool:
        self._call("DELETE", f"/api/invites/{invite_id}")
        return True

    def team_encryption_status(self, team_slug: str) -> Dict[str, Any]:
        return self._call("GET", self._team(team_slug, "/encryption"))

    def init_team_encryption(self, team_slug: str, team_pubkey: str) -> Dict[str, Any]:
        return self._call("POST", self._team(team_slug, "/init-encryption"), json={"teamPubkey": team_pubkey}) or {}

    def fetch_team_key(self, team_slug: str, user_pubkey: str) -> Optional[str]:
        data = self._call("GET", self._team(team_slug, "/key")) or {}
        if not data.get("hasKey"):
            return None
        return data.get("encryptedTeamKey")

    def store_team_key(self, team_slug: str, user_pubkey: str, wrapped_key: str) -> None:
        self._call("POST", self._team(team_slug, "/key"), json={"encryptedTeamKey": wrapped_key})

    def store_invite_key(self, team_slug: str, code_hash: str, encrypted_team_key: str,
                         creator_pubkey: str) -> None:
        body = {"codeHash": code_hash, "encryptedTeamKey": encrypted_team_key, "creatorPubkey": creator_pubkey}
        self._call("POST", self._team(team_slug, "/invite-key"), json=body)

    def fetch_invite_key(self, team_slug: str, code_hash: str) -> Dict[str, Any]:
        return self._call("GET", self._team(team_slug, "/invite-key"), params={"codeHash": code_hash}) or {}

    def _chat(self, path: str) -> str:
        prefix = f"/t/{self.team_slug}" if self.team_slug else ""
        return f"{prefix}/chat{path}"

    def fetch_channel_key(self, channel_id: str, user_pubkey: str) -> Optional[str]:
        try:
            data = self._call("GET", self._chat(f"/channels/{channel_id}/keys"))
        except ServerError as e:
            if e.status == 404:
                return None
            raise
        return (data or {}).get("encrypted_key")

    def store_channel_key(self, channel_id: str, user_pubkey: str, wrapped_key: str,
                          key_version: Optional[int] = None) -> Dict[str, Any]:
        body = {"userPubkey": user_pubkey, "encryptedKey": wrapped_key}
        if key_version is not None:
            body["keyVersion"] = key_version
        return self._call("POST", self._chat(f"/channels/{channel_id}/keys"), json=body) or {}

    def store_channel_keys(self, channel_id: str, keys: List[Dict[str, str]],
                           set_encrypted: bool = False) -> List[Dict[str, Any]]:
        body = {"keys": keys, "setEncrypted": set_encrypted}
        data = self._call("POST", self._chat(f"/channels/{channel_id}/keys/batch"), json=body) or {}
        return data.get("results", [])

    def pending_key_members(self, channel_id: str) -> List[Dict[str, Any]]:
        data = self._call("GET", self._chat(f"/channels/{channel_id}/keys/pending")) or {}
        return data.get("pendingMembers", [])

    def migration_status(self) -> Dict[str, Any]:
        return self._call("GET", "/api/community/migration/pending")

    def migration_messages(self, limit: int = 100, after_id: Optional[int] = None) -> Dict[str, Any]:
        params = {"limit": limit}
        if after_id is not None:
            params["after"] = after_id
        return self._call("GET", "/api/community/migration/messages", params=params)

    def submit_migration_batch(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self._call("POST", "/api/community/migration/batch", json={"messages": messages})

    def complete_migration(self) -> bool:
        self._call("POST", "/api/community/migration/complete")
        return True


# ---------------------------------------------------------------------------
# In-memory reference
# ---------------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryKeyServer(KeyServer):
    def __init__(self, clock=_utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self.admin_pubkey: Optional[str] = None
        self.community_keys: Dict[str, str] = {}
        self.invites: Dict[int, Dict[str, Any]] = {}
        self._next_invite_id = 1
        self.teams: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[int, Dict[str, Any]] = {}
        self.migration_complete = False
        self.channels: Dict[str, Dict[str, Any]] = {}

    # community -------------------------------------------------------------
    def community_status(self, user_pubkey: str) -> Dict[str, Any]:
        with self._lock:
            has_key = user_pubkey in self.community_keys
            return {
                "bootstrapped": self.admin_pubkey is not None,
                "userOnboarded": has_key,
                "hasCommunityKey": has_key,
                "isAdmin": user_pubkey == self.admin_pubkey,
            }

    def bootstrap_community(self, admin_pubkey: str, admin_key: str, user_keys: List[Dict[str, str]]) -> int:
        with self._lock:
            if self.admin_pubkey is not None:
                raise ServerError("Community already bootstrapped", status=409)
            self.admin_pubkey = admin_pubkey
            self.community_keys[admin_pubkey] = admin_key
            for entry in user_keys:
                self.community_keys[entry["userPubkey"]] = entry["wrappedKey"]
            distributed = 1 + len(user_keys)
        log.info(f"[KEYSERVER] community bootstrapped by {short(admin_pubkey)} keys={distributed}")
        return distributed

    def fetch_community_key(self, user_pubkey: str) -> Optional[str]:
        with self._lock:
            return self.community_keys.get(user_pubkey)

    def store_community_key(self, user_pubkey: str, wrapped_key: str) -> None:
        with self._lock:
            self.community_keys[user_pubkey] = wrapped_key

    # community invites -----------------------------------------------------
    def create_invite(self, code_hash: str, encrypted_key: str, single_use: bool,
                      ttl_days: int = DEFAULT_INVITE_TTL_DAYS, created_by: str = "") -> Dict[str, Any]:
        with self._lock:
            if self.admin_pubkey is None:
                raise ServerError("Community encryption is not bootstrapped", status=409)
            invite_id = self._next_invite_id
            self._next_invite_id += 1
            now = self._clock()
            self.invites[invite_id] = {
                "id": invite_id,
                "code_hash": code_hash,
                "encrypted_key": encrypted_key,
                "single_use": bool(single_use),
                "created_by": created_by,
                "created_at": now_ts(),
                "expires_at": now + timedelta(days=clamp_ttl_days(ttl_days)),
                "redeemed_count": 0,
            }
            return {"id": invite_id}

    def _find_invite(self, code_hash: str) -> Optional[Dict[str, Any]]:
        for invite in self.invites.values():
            if invite["code_hash"] == code_hash:
                return invite
        return None

    def redeem_invite(self, code_hash: str, user_pubkey: str = "") -> str:
        with self._lock:
            invite = self._find_invite(code_hash)
            if invite is None:
                raise ServerError("Invalid invite code", status=404)
            if self._clock() >= invite["expires_at"]:
                raise ServerError("Invite code has expired", status=410)
            if invite["single_use"] and invite["redeemed_count"] > 0:
                raise ServerError("Invite code has already been used", status=410)
            invite["redeemed_count"] += 1
            return invite["encrypted_key"]

    def list_invites(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "id": i["id"],
                    "single_use": i["single_use"],
                    "created_at": i["created_at"],
                    "expires_at": i["expires_at"].isoformat(),
                    "redeemed_count": i["redeemed_count"],
                }
                for i in sorted(self.invites.values(), key=lambda i: i["id"])
            ]

    def delete_invite(self, invite_id: int) -> bool:
        with self._lock:
            if self.invites.pop(invite_id, None) is None:
                raise ServerError("Invite not found", status=404)
            return True

    # teams -----------------------------------------------------------------
    def _team_state(self, team_slug: str) -> Dict[str, Any]:
        return self.teams.setdefault(team_slug, {"team_pubkey": None, "user_keys": {}, "invite_keys": {}})

    def team_encryption_status(self, team_slug: str) -> Dict[str, Any]:
        with self._lock:
            team = self.teams.get(team_slug)
            pubkey = team["team_pubkey"] if team else None
            return {"initialized": pubkey is not None, "teamPubkey": pubkey}

    def init_team_encryption(self, team_slug: str, team_pubkey: str) -> Dict[str, Any]:
        with self._lock:
            team = self._team_state(team_slug)
            if team["team_pubkey"] is not None:
                return {"success": True, "alreadyInitialized": True}
            team["team_pubkey"] = team_pubkey
            return {"success": True, "alreadyInitialized": False}

    def fetch_team_key(self, team_slug: str, user_pubkey: str) -> Optional[str]:
        with self._lock:
            team = self.teams.get(team_slug)
            return team["user_keys"].get(user_pubkey) if team else None

    def store_team_key(self, team_slug: str, user_pubkey: str, wrapped_key: str) -> None:
        with self._lock:
            self._team_state(team_slug)["user_keys"][user_pubkey] = wrapped_key

    def store_invite_key(self, team_slug: str, code_hash: str, encrypted_team_key: str,
                         creator_pubkey: str) -> None:
        with self._lock:
            team = self._team_state(team_slug)
            if team["team_pubkey"] is None:
                raise ServerError("Team encryption is not initialized", status=409)
            team["invite_keys"][code_hash] = {
                "encryptedTeamKey": encrypted_team_key,
                "creatorPubkey": creator_pubkey,
            }

    def fetch_invite_key(self, team_slug: str, code_hash: str) -> Dict[str, Any]:
        with self._lock:
            team = self.teams.get(team_slug)
            if not team:
                return {}
            return dict(team["invite_keys"].get(code_hash, {}))

    # private channels ------------------------------------------------------
    def _channel(self, channel_id: str) -> Dict[str, Any]:
        return self.channels.setdefault(str(channel_id), {"encrypted": False, "members": {}, "keys": {}})

    def add_channel_member(self, channel_id: str, pubkey: str, display_name: Optional[str] = None) -> None:
        with self._lock:
            self._channel(channel_id)["members"][pubkey] = display_name

    def _store_channel_key(self, channel: Dict[str, Any], user_pubkey: str, wrapped_key: str, version: int) -> None:
        channel["members"].setdefault(user_pubkey, None)
        channel["keys"][user_pubkey] = {"encrypted_key": wrapped_key, "key_version": version}

    def _next_key_version(self, channel: Dict[str, Any]) -> int:
        return max((k["key_version"] for k in channel["keys"].values()), default=0) + 1

    def fetch_channel_key(self, channel_id: str, user_pubkey: str) -> Optional[str]:
        with self._lock:
            channel = self.channels.get(str(channel_id))
            entry = channel["keys"].get(user_pubkey) if channel else None
            return entry["encrypted_key"] if entry else None

    def store_channel_key(self, channel_id: str, user_pubkey: str, wrapped_key: str,
                          key_version: Optional[int] = None) -> Dict[str, Any]:
        with self._lock:
            channel = self._channel(channel_id)
            version = key_version or self._next_key_version(channel)
            self._store_channel_key(channel, user_pubkey, wrapped_key, version)
            return {"userPubkey": user_pubkey, "key_version": version}

    def store_channel_keys(self, channel_id: str, keys: List[Dict[str, str]],
                           set_encrypted: bool = False) -> List[Dict[str, Any]]:
        if not keys:
            raise ServerError("keys array is required", status=400)
        with self._lock:
            channel = self._channel(channel_id)
            version = self._next_key_version(channel)
            results = []
            for entry in keys:
                pubkey, wrapped = entry.get("userPubkey"), entry.get("encryptedKey")
                if not pubkey or not wrapped:
                    results.append({"userPubkey": pubkey or "unknown", "success": False})
                    continue
                self._store_channel_key(channel, pubkey, wrapped, version)
                results.append({"userPubkey": pubkey, "success": True})
            if set_encrypted:
                channel["encrypted"] = True
            return results

    def pending_key_members(self, channel_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            channel = self.channels.get(str(channel_id))
            if not channel:
                return []
            return [
                {"pubkey": pubkey, "displayName": name}
                for pubkey, name in channel["members"].items()
                if pubkey not in channel["keys"]
            ]

    # migration -------------------------------------------------------------
    def seed_messages(self, bodies: Iterable[str]) -> List[int]:
        """Add plaintext messages awaiting migration; returns their ids."""
        with self._lock:
            ids = []
            for body in bodies:
                message_id = max(self.messages, default=0) + 1
                self.messages[message_id] = {"id": message_id, "body": body, "encrypted": False}
                ids.append(message_id)
            return ids

    def _pending(self) -> List[Dict[str, Any]]:
        return [m for _, m in sorted(self.messages.items()) if not m["encrypted"]]

    def migration_status(self) -> Dict[str, Any]:
        with self._lock:
            return {"pendingCount": len(self._pending()), "migrationComplete": self.migration_complete}

    def migration_messages(self, limit: int = 100, after_id: Optional[int] = None) -> Dict[str, Any]:
        with self._lock:
            pending = [m for m in self._pending() if after_id is None or m["id"] > after_id]
            page = [{"id": m["id"], "body": m["body"]} for m in pending[:limit]]
            return {"messages": page, "hasMore": len(page) == limit}

    def submit_migration_batch(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        with self._lock:
            updated = 0
            for m in messages:
                stored = self.messages.get(m["id"])
                if stored is None or stored["encrypted"]:
                    continue
                stored["body"] = m["body"]
                stored["encrypted"] = True
                updated += 1
            remaining = len(self._pending())
            return {"updated": updated, "remaining": remaining}

    def complete_migration(self) -> bool:
        with self._lock:
            self.migration_complete = True
            return True
