"""
zkchat_core.bunker
------------------
Remote signer ("bunker") request/response protocol over a broadcast transport.

Every call is an independent BunkerCall with its own correlation id and its
own subscription:

    IDLE → REQUEST_SENT → {RESPONSE_MATCHED | TIMED_OUT} → IDLE

Requests and responses are kind-24133 events whose content is a NIP-44
encrypted JSON-RPC-like message ``{id, method, params}`` / ``{id, result}`` /
``{id, error}``, tagged with the recipient pubkey. A response is only accepted
when it decrypts under the client's ephemeral key and carries the outstanding
id; anything else on the transport is ignored.
"""

from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from . import nip44
from .config import BUNKER_SINCE_WINDOW, BUNKER_TIMEOUT
from .crypto import generate_secret_key, get_public_key, is_valid_pubkey, secret_key_from_hex, sign_event
from .errors import BunkerTimeoutError, FormatError, RemoteSignerError
from .event import NOSTR_CONNECT_KIND, SignedEvent
from .logger import get_logger
from .utils import new_id, now_unix, short

log = get_logger("ZK.Bunker")

BUNKER_CONNECTION_KEY = "bunker_connection"

METHOD_CONNECT = "connect"
METHOD_PING = "ping"
METHOD_GET_PUBLIC_KEY = "get_public_key"
METHOD_SIGN_EVENT = "sign_event"
METHOD_NIP44_ENCRYPT = "nip44_encrypt"
METHOD_NIP44_DECRYPT = "nip44_decrypt"


@dataclass
class BunkerConnection:
    client_secret_key: str          # hex, ephemeral client identity
    remote_signer_pubkey: str       # hex
    relays: List[str] = field(default_factory=list)
    connect_secret: Optional[str] = None

    def __post_init__(self):
        if not is_valid_pubkey(self.remote_signer_pubkey):
            raise FormatError("Invalid remote signer pubkey")
        secret_key_from_hex(self.client_secret_key)

    @property
    def client_pubkey(self) -> str:
        return get_public_key(bytes.fromhex(self.client_secret_key))

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "clientSecretKey": self.client_secret_key,
            "remoteSignerPubkey": self.remote_signer_pubkey,
            "relays": list(self.relays),
        }
        if self.connect_secret:
            d["secret"] = self.connect_secret
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BunkerConnection":
        try:
            return cls(
                client_secret_key=data["clientSecretKey"],
                remote_signer_pubkey=data["remoteSignerPubkey"],
                relays=list(data.get("relays", [])),
                connect_secret=data.get("secret"),
            )
        except (KeyError, TypeError) as e:
            raise FormatError(f"Malformed bunker connection: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "BunkerConnection":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise FormatError(f"Malformed bunker connection: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def generate(cls, remote_signer_pubkey: str, relays: Optional[List[str]] = None,
                 connect_secret: Optional[str] = None) -> "BunkerConnection":
        return cls(
            client_secret_key=generate_secret_key().hex(),
            remote_signer_pubkey=remote_signer_pubkey,
            relays=list(relays or []),
            connect_secret=connect_secret,
        )

    @classmethod
    def from_uri(cls, uri: str) -> "BunkerConnection":
        """Parse ``bunker://<remote-pubkey>?relay=<url>&secret=<token>``."""
        parsed = urlparse(uri.strip())
        if parsed.scheme != "bunker":
            raise FormatError(f"Not a bunker URI: {uri[:16]}")
        query = parse_qs(parsed.query)
        return cls.generate(
            remote_signer_pubkey=parsed.netloc,
            relays=query.get("relay", []),
            connect_secret=(query.get("secret") or [None])[0],
        )


class RequestState(str, Enum):
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    RESPONSE_MATCHED = "response_matched"
    TIMED_OUT = "timed_out"


class BunkerCall:
    """One outstanding request. Not reusable."""

    def __init__(self, proxy: "RemoteSignerProxy", method: str, params: List[Any]):
        self.proxy = proxy
        self.id = new_id()
        self.method = method
        self.params = list(params)
        self.state = RequestState.IDLE
        self.outcome: Optional[RequestState] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._future: Optional[asyncio.Future] = None

    def _request_event(self) -> dict:
        remote = self.proxy.connection.remote_signer_pubkey
        payload = json.dumps({"id": self.id, "method": self.method, "params": self.params})
        conversation_key = nip44.get_conversation_key(self.proxy.client_secret, remote)
        event = SignedEvent(
            kind=NOSTR_CONNECT_KIND,
            created_at=now_unix(),
            tags=[["p", remote]],
            content=nip44.encrypt(payload, conversation_key),
        )
        return sign_event(event, self.proxy.client_secret).to_dict()

    def _on_event(self, event: dict) -> None:
        # May run on a transport thread; only the loop touches the future.
        if not isinstance(event, dict) or event.get("pubkey") != self.proxy.connection.remote_signer_pubkey:
            return
        try:
            conversation_key = nip44.get_conversation_key(self.proxy.client_secret, event["pubkey"])
            message = json.loads(nip44.decrypt(event["content"], conversation_key))
        except (FormatError, KeyError, TypeError, ValueError) as e:
            log.debug(f"Ignoring undecryptable event for {self.method}: {e}")
            return
        if not isinstance(message, dict) or message.get("id") != self.id:
            return
        self._loop.call_soon_threadsafe(self._resolve, message)

    def _resolve(self, message: dict) -> None:
        if self._future.done():
            return
        self.state = RequestState.RESPONSE_MATCHED
        self._future.set_result(message)

    async def run(self) -> Any:
        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        timeout = self.proxy.timeout
        flt = {
            "kinds": [NOSTR_CONNECT_KIND],
            "#p": [self.proxy.client_pubkey],
            "since": now_unix() - self.proxy.since_window,
        }
        sub = self.proxy.transport.subscribe([flt], self._on_event)
        try:
            request_event = self._request_event()
            self.state = RequestState.REQUEST_SENT
            log.info(f"Sending {self.method} request to signer {short(self.proxy.connection.remote_signer_pubkey)}")
            self.proxy.transport.publish(request_event)
            try:
                message = await asyncio.wait_for(self._future, timeout)
            except asyncio.TimeoutError:
                self.state = RequestState.TIMED_OUT
                log.warning(f"Request timed out: {self.method}")
                raise BunkerTimeoutError(self.method, timeout) from None
        finally:
            sub.close()
            self.outcome = self.state
            self.state = RequestState.IDLE

        log.info(f"Received response for {self.method}")
        if message.get("error"):
            log.error(f"Signer error for {self.method}: {message['error']}")
            raise RemoteSignerError(str(message["error"]), self.method)
        return message.get("result")


class RemoteSignerProxy:
    """
    Delegates encrypt/decrypt/sign/get-identity to a remote signer.

    Holds no table of pending requests: each call owns its subscription, so
    concurrent calls on one connection never see each other's responses.
    """

    def __init__(self, connection: BunkerConnection, transport, timeout: float = BUNKER_TIMEOUT,
                 since_window: int = BUNKER_SINCE_WINDOW):
        self.connection = connection
        self.transport = transport
        self.timeout = timeout
        self.since_window = since_window
        self.client_secret = bytes.fromhex(connection.client_secret_key)
        self.client_pubkey = get_public_key(self.client_secret)

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return await BunkerCall(self, method, params or []).run()

    async def connect(self) -> Any:
        params = [self.connection.remote_signer_pubkey]
        if self.connection.connect_secret:
            params.append(self.connection.connect_secret)
        return await self.request(METHOD_CONNECT, params)

    async def ping(self) -> Any:
        return await self.request(METHOD_PING)

    async def get_public_key(self) -> str:
        return await self.request(METHOD_GET_PUBLIC_KEY)

    async def sign_event(self, event: SignedEvent) -> SignedEvent:
        log.info("Signing event via bunker")
        result = await self.request(METHOD_SIGN_EVENT, [json.dumps(event.to_unsigned_dict())])
        try:
            return SignedEvent.from_json(result)
        except (json.JSONDecodeError, TypeError) as e:
            raise FormatError(f"Signer returned a malformed event: {e}") from e

    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self.request(METHOD_NIP44_ENCRYPT, [peer_pubkey, plaintext])

    async def nip44_decrypt(self, peer_pubkey: str, payload: str) -> str:
        return await self.request(METHOD_NIP44_DECRYPT, [peer_pubkey, payload])

    def close(self) -> None:
        self.transport.close()


class BunkerResponder:
    """
    The signer side of the protocol: answers requests addressed to its own
    pubkey using a locally held key.
    """

    def __init__(self, secret: bytes, transport, connect_secret: Optional[str] = None,
                 since_window: int = BUNKER_SINCE_WINDOW):
        self._secret = bytes(secret)
        self.pubkey = get_public_key(self._secret)
        self.transport = transport
        self.connect_secret = connect_secret
        self.since_window = since_window
        self._sub = None
        self._seen = set()

    def start(self) -> None:
        flt = {"kinds": [NOSTR_CONNECT_KIND], "#p": [self.pubkey], "since": now_unix() - self.since_window}
        self._sub = self.transport.subscribe([flt], self._on_request)
        log.info(f"Bunker responder listening as {short(self.pubkey)}")

    def stop(self) -> None:
        if self._sub:
            self._sub.close()
            self._sub = None

    def _on_request(self, event: dict) -> None:
        try:
            client = event["pubkey"]
            conversation_key = nip44.get_conversation_key(self._secret, client)
            message = json.loads(nip44.decrypt(event["content"], conversation_key))
            request_id = message["id"]
            method = message["method"]
            params = message.get("params", [])
        except (FormatError, KeyError, TypeError, ValueError) as e:
            log.debug(f"Ignoring unreadable request: {e}")
            return
        if request_id in self._seen:
            return
        self._seen.add(request_id)

        try:
            response = {"id": request_id, "result": self._dispatch(method, params)}
        except (RemoteSignerError, FormatError, IndexError, KeyError, TypeError, ValueError) as e:
            log.warning(f"Request {method} failed: {e}")
            response = {"id": request_id, "error": str(e)}

        reply = SignedEvent(
            kind=NOSTR_CONNECT_KIND,
            created_at=now_unix(),
            tags=[["p", client]],
            content=nip44.encrypt(json.dumps(response), conversation_key),
        )
        self.transport.publish(sign_event(reply, self._secret).to_dict())

    def _dispatch(self, method: str, params: List[Any]) -> Any:
        if method == METHOD_CONNECT:
            if self.connect_secret and (len(params) < 2 or params[1] != self.connect_secret):
                raise RemoteSignerError("invalid connect secret", method)
            return "ack"
        if method == METHOD_PING:
            return "pong"
        if method == METHOD_GET_PUBLIC_KEY:
            return self.pubkey
        if method == METHOD_SIGN_EVENT:
            event = SignedEvent.from_dict(json.loads(params[0]))
            event.pubkey, event.id, event.sig = "", "", ""
            return sign_event(event, self._secret).to_json()
        if method == METHOD_NIP44_ENCRYPT:
            return nip44.encrypt(params[1], nip44.get_conversation_key(self._secret, params[0]))
        if method == METHOD_NIP44_DECRYPT:
            return nip44.decrypt(params[1], nip44.get_conversation_key(self._secret, params[0]))
        raise RemoteSignerError(f"Unsupported method: {method}", method)
