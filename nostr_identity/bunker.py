# nostr_identity/bunker.py
"""
NIP-46 remote signing sessions.

Messages are kind 24133 events whose content is a NIP-44 encrypted JSON-RPC
object, ``{id, method, params}`` out and ``{id, result, error}`` back, with a
``p`` tag naming the recipient.

Two ways to establish a session:

- client-initiated: we publish nothing; we hand the user a
  ``nostrconnect://<client-pubkey>?...&secret=...&relay=...`` URI and wait for
  the remote signer to answer with the secret.
- remote-initiated: the user pastes ``bunker://<remote>?relay=...&secret=...``
  and we send ``connect``.

State machine:

    IDLE -> CONNECTING -> CONNECTED
                       -> AWAITING_AUTHORIZATION -> CONNECTING ...
                       -> FAILED

There is no automatic retry. A failed session stays failed; build a new one.
"""

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, quote, urlparse

from nostr_identity import nip44
from nostr_identity.config import (
    APP_DISPLAY_NAME,
    APP_ICON_URL,
    APP_URL,
    BUNKER_CONNECT_TIMEOUT,
    NOSTRCONNECT_RELAY,
    SIGNER_REQUEST_TIMEOUT,
)
from nostr_identity.errors import (
    ConnectionTimeout,
    DecryptionFailed,
    InvalidKeyFormat,
    NostrIdentityError,
    PublishFailed,
    RemoteIdentityMismatch,
    SigningRejected,
    SigningUnavailable,
)
from nostr_identity.events import finalize_event, make_template, verify_event
from nostr_identity.keys import (
    generate_secret_key,
    get_public_key,
    short,
    validate_public_key,
)
from nostr_identity.models import BunkerIdentity

logger = logging.getLogger(__name__)

NIP46_KIND = 24133


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    CONNECTED = "connected"
    FAILED = "failed"


# -----------------------------------------------------------
# Connection artifacts
# -----------------------------------------------------------

@dataclass(frozen=True)
class BunkerPointer:
    remote_public_key: str
    relays: tuple
    secret: Optional[str] = None


def parse_bunker_uri(uri: str) -> BunkerPointer:
    """
    bunker://<remote-pubkey-hex>?relay=wss://...&relay=...&secret=...
    """
    parsed = urlparse((uri or "").strip())
    if parsed.scheme != "bunker":
        raise InvalidKeyFormat("bunker URL must start with bunker://")

    remote = validate_public_key(parsed.netloc or parsed.path.lstrip("/"))
    params = parse_qs(parsed.query)
    relays = tuple(r for r in params.get("relay", []) if r.startswith(("wss://", "ws://")))
    if not relays:
        raise InvalidKeyFormat("bunker URL has no relay")
    secret = params.get("secret", [None])[0]
    return BunkerPointer(remote_public_key=remote, relays=relays, secret=secret)


@dataclass(frozen=True)
class NostrConnectRequest:
    uri: str
    client_secret_key: bytes = field(repr=False)
    client_public_key: str
    secret: str = field(repr=False)
    relay: str


def create_nostrconnect_uri(
    relay: str = NOSTRCONNECT_RELAY,
    name: str = APP_DISPLAY_NAME,
    url: str = APP_URL,
    image: str = APP_ICON_URL,
    perms: str = "",
) -> NostrConnectRequest:
    """
    Fresh ephemeral client key + random secret. Metadata parameters come
    before ``secret`` and ``relay``; some signers depend on that order.
    """
    client_secret = generate_secret_key()
    client_pubkey = get_public_key(client_secret)
    secret = secrets.token_hex(8)

    uri = (
        f"nostrconnect://{client_pubkey}"
        f"?image={quote(image, safe='')}"
        f"&url={quote(url, safe='')}"
        f"&name={quote(name, safe='')}"
        f"&perms={quote(perms, safe='')}"
        f"&secret={secret}"
        f"&relay={relay}"
    )
    return NostrConnectRequest(
        uri=uri,
        client_secret_key=client_secret,
        client_public_key=client_pubkey,
        secret=secret,
        relay=relay,
    )


def parse_nostrconnect_uri(uri: str) -> dict:
    parsed = urlparse((uri or "").strip())
    if parsed.scheme != "nostrconnect":
        raise InvalidKeyFormat("connection URI must start with nostrconnect://")
    params = parse_qs(parsed.query)
    secret = params.get("secret", [None])[0]
    if not secret:
        raise InvalidKeyFormat("nostrconnect URI has no secret")
    return {
        "client_public_key": validate_public_key(parsed.netloc),
        "relays": params.get("relay", []),
        "secret": secret,
        "name": params.get("name", [None])[0],
        "url": params.get("url", [None])[0],
        "image": params.get("image", [None])[0],
        "perms": params.get("perms", [""])[0],
    }


def _scoped(transport, relays):
    with_relays = getattr(transport, "with_relays", None)
    return with_relays(relays) if with_relays and relays else transport


# -----------------------------------------------------------
# Session
# -----------------------------------------------------------

class BunkerSession:
    def __init__(
        self,
        transport,
        relays,
        client_secret: bytes | None = None,
        on_auth: Optional[Callable[[str], Any]] = None,
        connect_timeout: float = BUNKER_CONNECT_TIMEOUT,
        request_timeout: float = SIGNER_REQUEST_TIMEOUT,
    ):
        self.relays = tuple(relays)
        self.client_secret = client_secret or generate_secret_key()
        self.client_public_key = get_public_key(self.client_secret)
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout

        self.state = SessionState.IDLE
        self.remote_public_key: Optional[str] = None
        self.user_public_key: Optional[str] = None
        self.connection_secret: Optional[str] = None
        self.auth_url: Optional[str] = None
        self.error: Optional[NostrIdentityError] = None
        self.closed = False

        self._transport = _scoped(transport, self.relays)
        self._on_auth = on_auth
        self._subscription = None
        self._expected_remote: Optional[str] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._requests: dict[str, tuple[str, list]] = {}
        self._awaiting_auth: set[str] = set()
        self._resume_state = SessionState.CONNECTING
        self._handshake_secret: Optional[str] = None
        self._handshake: Optional[asyncio.Future] = None
        self._request_lock = asyncio.Lock()

    # ---------------- state ----------------

    def _set_state(self, state: SessionState):
        if state != self.state:
            logger.info("Bunker session %s: %s -> %s", short(self.client_public_key), self.state.value, state.value)
            self.state = state

    async def _abort(self, exc: NostrIdentityError):
        self.error = exc
        self._set_state(SessionState.FAILED)
        await self._unsubscribe()

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "auth_url": self.auth_url,
            "remote_public_key": self.remote_public_key,
            "user_public_key": self.user_public_key,
            "relays": list(self.relays),
            "error": type(self.error).__name__ if self.error else None,
            "error_message": str(self.error) if self.error else None,
        }

    # ---------------- relay listener ----------------

    async def _listen(self):
        # one outstanding subscription per session
        await self._unsubscribe()
        try:
            self._subscription = await self._transport.subscribe(
                {"kinds": [NIP46_KIND], "#p": [self.client_public_key]},
                self._on_event,
            )
        except PublishFailed as exc:
            raise SigningUnavailable(f"cannot listen on bunker relays: {exc}") from exc

    async def _unsubscribe(self):
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await sub.close()

    async def _on_event(self, event: dict):
        if event.get("kind") != NIP46_KIND:
            return
        try:
            plaintext = nip44.decrypt_from(self.client_secret, event["pubkey"], event["content"])
            message = json.loads(plaintext)
        except (DecryptionFailed, InvalidKeyFormat, ValueError, KeyError) as exc:
            logger.debug("Ignoring undecryptable NIP-46 event: %s", exc)
            return
        if not isinstance(message, dict):
            return

        if self._match_handshake(event, message):
            return

        req_id = message.get("id")
        fut = self._pending.get(req_id)
        if fut is None or fut.done():
            logger.debug("Ignoring unmatched NIP-46 response id=%s", req_id)
            return

        if self._expected_remote and event["pubkey"] != self._expected_remote:
            fut.set_exception(RemoteIdentityMismatch(self._expected_remote, event["pubkey"]))
            return

        if message.get("result") == "auth_url":
            await self._request_authorization(req_id, message.get("error") or "")
            return

        self._awaiting_auth.discard(req_id)
        if not self._awaiting_auth and self.state == SessionState.AWAITING_AUTHORIZATION:
            self.auth_url = None
            self._set_state(self._resume_state)

        if message.get("error"):
            fut.set_exception(SigningRejected(str(message["error"])))
        else:
            fut.set_result(message.get("result"))

    def _match_handshake(self, event: dict, message: dict) -> bool:
        waiter = self._handshake
        if waiter is None or waiter.done() or not self._handshake_secret:
            return False
        secret = self._handshake_secret
        params = message.get("params") or []
        acked = message.get("result") == secret or (
            message.get("method") == "connect" and secret in params
        ) or (message.get("result") == "ack" and secret in params)
        if acked:
            waiter.set_result(event["pubkey"])
        return acked

    async def _request_authorization(self, req_id: str, url: str):
        logger.info("Remote signer requires authorization for request %s", req_id)
        if self.state != SessionState.AWAITING_AUTHORIZATION:
            self._resume_state = self.state
        self._awaiting_auth.add(req_id)
        self.auth_url = url
        self._set_state(SessionState.AWAITING_AUTHORIZATION)
        if self._on_auth is not None:
            try:
                result = self._on_auth(url)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.error("on_auth callback failed: %s", exc)

    async def authorization_completed(self):
        """
        Called once the user has finished the external authorization step.
        Re-sends every request that was parked on it.
        """
        for req_id in list(self._awaiting_auth):
            request = self._requests.get(req_id)
            if request is None:
                continue
            method, params = request
            logger.info("Re-sending %s after authorization", method)
            await self._publish_request(req_id, method, params)

    # ---------------- requests ----------------

    async def _publish_request(self, req_id: str, method: str, params: list):
        recipient = self._expected_remote or self.remote_public_key
        payload = json.dumps({"id": req_id, "method": method, "params": params})
        content = nip44.encrypt_for(self.client_secret, recipient, payload)
        event = finalize_event(make_template(NIP46_KIND, content, [["p", recipient]]), self.client_secret)
        try:
            await self._transport.publish_event(event)
        except PublishFailed as exc:
            raise SigningUnavailable(f"cannot reach remote signer: {exc}") from exc

    async def _roundtrip(self, method: str, params: list, timeout: float, timeout_error=SigningUnavailable):
        loop = asyncio.get_running_loop()
        req_id = secrets.token_hex(8)
        fut = loop.create_future()
        self._pending[req_id] = fut
        self._requests[req_id] = (method, params)

        started = loop.time()
        deadline = started + timeout
        extended = False
        try:
            await self._publish_request(req_id, method, params)
            while True:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    return await asyncio.wait_for(asyncio.shield(fut), remaining)
                except asyncio.TimeoutError:
                    # authorization is a human step; give it the handshake budget
                    if req_id in self._awaiting_auth and not extended:
                        deadline = started + max(timeout, self.connect_timeout)
                        extended = True
                        continue
                    raise timeout_error(f"no response to {method} within {timeout:.0f}s")
        finally:
            self._pending.pop(req_id, None)
            self._requests.pop(req_id, None)
            self._awaiting_auth.discard(req_id)

    async def request(self, method: str, params: list, timeout: float | None = None):
        if self.closed or self.state != SessionState.CONNECTED:
            raise SigningUnavailable(f"bunker session is {'closed' if self.closed else self.state.value}")
        async with self._request_lock:
            return await self._roundtrip(method, params, timeout or self.request_timeout)

    # ---------------- flows ----------------

    async def wait_for_connection(self, connect_request: NostrConnectRequest, timeout: float | None = None) -> str:
        """
        Client-initiated flow. Waits for the remote signer to echo the secret
        from *connect_request*, then learns the user key.
        """
        if connect_request.client_secret_key != self.client_secret:
            raise InvalidKeyFormat("connect request was issued for a different client key")
        timeout = timeout or self.connect_timeout

        self._set_state(SessionState.CONNECTING)
        self._handshake_secret = connect_request.secret
        self._handshake = asyncio.get_running_loop().create_future()
        try:
            await self._listen()
            logger.info("Waiting up to %.0fs for remote signer on %s", timeout, ", ".join(self.relays))
            remote = await asyncio.wait_for(self._handshake, timeout)
        except asyncio.TimeoutError:
            await self._abort(ConnectionTimeout(f"no remote signer answered within {timeout:.0f}s"))
            raise self.error
        except NostrIdentityError as exc:
            await self._abort(exc)
            raise
        except asyncio.CancelledError:
            await self._unsubscribe()
            raise
        finally:
            self._handshake = None
            self._handshake_secret = None

        self.remote_public_key = remote
        self._expected_remote = remote
        self._set_state(SessionState.CONNECTED)
        logger.info("Remote signer %s connected", short(remote))
        return await self._learn_user_key()

    async def connect(self, pointer: BunkerPointer, timeout: float | None = None, send_secret: bool = True) -> str:
        """
        Remote-initiated flow (and reconnection). Sends ``connect`` to
        ``pointer.remote_public_key`` and waits for the matching response.
        """
        timeout = timeout or self.connect_timeout
        self._set_state(SessionState.CONNECTING)
        self.remote_public_key = pointer.remote_public_key
        self._expected_remote = pointer.remote_public_key
        if pointer.secret:
            self.connection_secret = pointer.secret

        params = [pointer.remote_public_key]
        if send_secret and pointer.secret:
            params.append(pointer.secret)

        try:
            await self._listen()
            result = await self._roundtrip("connect", params, timeout, timeout_error=ConnectionTimeout)
        except NostrIdentityError as exc:
            await self._abort(exc)
            raise
        except asyncio.CancelledError:
            await self._unsubscribe()
            raise

        if result not in ("ack", pointer.secret) or result is None:
            await self._abort(SigningRejected(f"unexpected connect result: {result!r}"))
            raise self.error

        self._set_state(SessionState.CONNECTED)
        logger.info("Connected to bunker %s", short(pointer.remote_public_key))
        return await self._learn_user_key()

    async def _learn_user_key(self) -> str:
        try:
            user = await self.request("get_public_key", [])
            self.user_public_key = validate_public_key(str(user))
        except NostrIdentityError as exc:
            await self._abort(exc)
            raise
        return self.user_public_key

    @classmethod
    async def reopen(cls, identity: BunkerIdentity, transport, **kwargs) -> "BunkerSession":
        """
        Rebuild a live session from a stored pointer. The responder must be
        the stored remote key and must still sign as the stored user key.
        """
        session = cls(transport, identity.relays, client_secret=identity.client_secret_bytes, **kwargs)
        session.connection_secret = identity.connection_secret
        pointer = BunkerPointer(identity.remote_public_key, tuple(identity.relays), None)
        user = await session.connect(pointer, send_secret=False)
        if user != identity.public_key:
            await session._abort(RemoteIdentityMismatch(identity.public_key, user))
            raise session.error
        return session

    # ---------------- signer operations ----------------

    async def sign_event(self, template: dict) -> dict:
        result = await self.request("sign_event", [json.dumps(template)])
        try:
            event = json.loads(result) if isinstance(result, str) else result
        except ValueError as exc:
            raise SigningRejected("remote signer returned malformed event") from exc
        if not isinstance(event, dict) or not verify_event(event):
            raise SigningRejected("remote signer returned an invalid signature")
        if event["pubkey"] != self.user_public_key:
            raise RemoteIdentityMismatch(self.user_public_key, event["pubkey"])
        return event

    async def nip44_encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self.request("nip44_encrypt", [peer_pubkey, plaintext])

    async def nip44_decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self.request("nip44_decrypt", [peer_pubkey, ciphertext])

    async def ping(self) -> bool:
        return await self.request("ping", []) == "pong"

    # ---------------- lifecycle ----------------

    def to_identity(self) -> BunkerIdentity:
        if self.state != SessionState.CONNECTED or not self.user_public_key:
            raise SigningUnavailable("bunker session is not connected")
        return BunkerIdentity(
            remote_public_key=self.remote_public_key,
            client_secret_key=self.client_secret.hex(),
            relays=self.relays,
            public_key=self.user_public_key,
            connection_secret=self.connection_secret,
        )

    async def close(self):
        self.closed = True
        await self._unsubscribe()
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SigningUnavailable("bunker session closed"))
        self._pending.clear()
        logger.info("Bunker session %s closed", short(self.client_public_key))


# -----------------------------------------------------------
# Login helpers
# -----------------------------------------------------------

async def login_with_nostrconnect(store, transport, connect_request: NostrConnectRequest, **kwargs) -> BunkerSession:
    session = BunkerSession(
        transport,
        (connect_request.relay,),
        client_secret=connect_request.client_secret_key,
        **kwargs,
    )
    await session.wait_for_connection(connect_request)
    await store.adopt_bunker_session(session)
    return session


async def login_with_bunker(store, transport, uri: str, **kwargs) -> BunkerSession:
    pointer = parse_bunker_uri(uri)
    session = BunkerSession(transport, pointer.relays, **kwargs)
    await session.connect(pointer)
    await store.adopt_bunker_session(session)
    return session
