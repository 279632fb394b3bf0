# nostr_identity/relay.py
"""
Relay transport.

The protocol modules only depend on the ``RelayTransport`` interface:

    publish_event(event)                  resolves once a relay accepts it
    query(filter) -> [event]              stored events up to EOSE
    subscribe(filter, on_event) -> sub    live events until ``await sub.close()``

``RelayPool`` implements it over NIP-01 websockets, one connection per URL.
"""

import asyncio
import inspect
import json
import logging
import secrets
from typing import Any, Callable, Iterable, Optional, Protocol

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from nostr_identity.config import RELAY_TIMEOUT, RELAY_URLS
from nostr_identity.errors import PublishFailed
from nostr_identity.events import verify_event

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Any]


async def _maybe_await(x: Any) -> Any:
    return await x if inspect.isawaitable(x) else x


class Subscription(Protocol):
    async def close(self) -> None: ...


class RelayTransport(Protocol):
    async def publish_event(self, event: dict) -> None: ...
    async def query(self, filter: dict) -> list[dict]: ...
    async def subscribe(self, filter: dict, on_event: EventHandler) -> Subscription: ...


# -----------------------------------------------------------
# Single relay connection
# -----------------------------------------------------------

class RelayConnection:
    def __init__(self, url: str, timeout: float = RELAY_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._open_lock = asyncio.Lock()
        self._handlers: dict[str, EventHandler] = {}
        self._eose: dict[str, asyncio.Event] = {}
        self._pending_ok: dict[str, asyncio.Future] = {}

    async def ensure_open(self):
        async with self._open_lock:
            if self._ws is not None:
                return
            try:
                self._ws = await connect(self.url, open_timeout=self.timeout)
            except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
                raise PublishFailed(f"cannot connect to {self.url}: {exc}") from exc
            self._reader = asyncio.create_task(self._read_loop(), name=f"relay-reader:{self.url}")
            logger.info("Connected to relay %s", self.url)

    async def _send(self, message: list):
        await self.ensure_open()
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            self._ws = None
            raise PublishFailed(f"relay {self.url} closed the connection") from exc

    async def _read_loop(self):
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("Non-JSON frame from %s", self.url)
                    continue
                try:
                    await self._dispatch(message)
                except Exception as exc:
                    logger.warning("Dropping malformed frame from %s: %s", self.url, exc)
        except ConnectionClosed as exc:
            logger.warning("Relay %s disconnected: %s", self.url, exc)
        finally:
            if self._ws is ws:
                self._ws = None
            for fut in self._pending_ok.values():
                if not fut.done():
                    fut.set_exception(PublishFailed(f"relay {self.url} disconnected"))
            self._pending_ok.clear()
            await ws.close()

    async def _dispatch(self, message: list):
        # every frame we act on carries a string id or message in slot 1
        if not isinstance(message, list) or len(message) < 2 or not isinstance(message[1], str):
            return
        kind = message[0]

        if kind == "EVENT" and len(message) >= 3:
            handler = self._handlers.get(message[1])
            event = message[2]
            if handler is None:
                return
            if not verify_event(event):
                logger.debug("Dropping event with bad signature from %s", self.url)
                return
            try:
                await _maybe_await(handler(event))
            except Exception as exc:
                logger.error("Subscription handler failed on %s: %s", self.url, exc)

        elif kind == "EOSE" and len(message) >= 2:
            flag = self._eose.get(message[1])
            if flag is not None:
                flag.set()

        elif kind == "OK" and len(message) >= 3:
            fut = self._pending_ok.pop(message[1], None)
            if fut is not None and not fut.done():
                accepted = bool(message[2])
                reason = message[3] if len(message) > 3 and isinstance(message[3], str) else ""
                if accepted or reason.startswith("duplicate"):
                    fut.set_result(reason)
                else:
                    fut.set_exception(PublishFailed(f"{self.url} rejected event: {reason}"))

        elif kind == "CLOSED" and len(message) >= 2:
            logger.info("Relay %s closed subscription %s: %s", self.url, message[1], message[2:] or "")
            flag = self._eose.get(message[1])
            if flag is not None:
                flag.set()

        elif kind == "NOTICE":
            logger.info("NOTICE from %s: %s", self.url, message[1:] or "")

    async def publish(self, event: dict):
        fut = asyncio.get_running_loop().create_future()
        self._pending_ok[event["id"]] = fut
        try:
            await self._send(["EVENT", event])
            await asyncio.wait_for(fut, self.timeout)
        except asyncio.TimeoutError as exc:
            raise PublishFailed(f"no OK from {self.url} within {self.timeout}s") from exc
        finally:
            self._pending_ok.pop(event["id"], None)

    async def open_subscription(self, sub_id: str, filter: dict, on_event: EventHandler) -> asyncio.Event:
        self._handlers[sub_id] = on_event
        eose = asyncio.Event()
        self._eose[sub_id] = eose
        await self._send(["REQ", sub_id, filter])
        return eose

    async def close_subscription(self, sub_id: str):
        self._handlers.pop(sub_id, None)
        self._eose.pop(sub_id, None)
        if self._ws is not None:
            try:
                await self._send(["CLOSE", sub_id])
            except PublishFailed:
                pass  # connection already gone; nothing left to close

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
        self._ws = None


# -----------------------------------------------------------
# Pool
# -----------------------------------------------------------

class PoolSubscription:
    def __init__(self, pool: "RelayPool", sub_id: str, urls: list[str]):
        self._pool = pool
        self.sub_id = sub_id
        self.urls = urls
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for url in self.urls:
            await self._pool._connection(url).close_subscription(self.sub_id)
        logger.debug("Subscription %s closed", self.sub_id)


class RelayPool:
    def __init__(self, urls: Iterable[str] | None = None, timeout: float = RELAY_TIMEOUT):
        self.urls = list(urls or RELAY_URLS)
        self.timeout = timeout
        self._connections: dict[str, RelayConnection] = {}

    def _connection(self, url: str) -> RelayConnection:
        conn = self._connections.get(url)
        if conn is None:
            conn = RelayConnection(url, timeout=self.timeout)
            self._connections[url] = conn
        return conn

    def with_relays(self, urls: Iterable[str]) -> "RelayPool":
        """A view of this pool that talks to *urls* instead of the defaults."""
        view = RelayPool(urls, timeout=self.timeout)
        view._connections = self._connections
        return view

    async def publish_event(self, event: dict) -> None:
        results = await asyncio.gather(
            *(self._connection(url).publish(event) for url in self.urls),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if len(errors) == len(results):
            reasons = "; ".join(str(e) for e in errors) or "no relays configured"
            raise PublishFailed(f"event {event['id'][:8]} not accepted: {reasons}")
        logger.debug("Event %s accepted by %d/%d relays", event["id"][:8], len(results) - len(errors), len(results))

    async def query(self, filter: dict) -> list[dict]:
        collected: dict[str, dict] = {}
        sub_id = secrets.token_hex(8)

        def on_event(event: dict):
            collected.setdefault(event["id"], event)

        waits = []
        opened = []
        for url in self.urls:
            try:
                waits.append(await self._connection(url).open_subscription(sub_id, filter, on_event))
                opened.append(url)
            except PublishFailed as exc:
                logger.warning("Query skipped relay %s: %s", url, exc)

        try:
            if waits:
                await asyncio.wait_for(asyncio.gather(*(w.wait() for w in waits)), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Query %s timed out before EOSE from every relay", sub_id)
        finally:
            for url in opened:
                await self._connection(url).close_subscription(sub_id)

        return sorted(collected.values(), key=lambda e: e["created_at"], reverse=True)

    async def subscribe(self, filter: dict, on_event: EventHandler) -> PoolSubscription:
        sub_id = secrets.token_hex(8)
        opened = []
        for url in self.urls:
            try:
                await self._connection(url).open_subscription(sub_id, filter, on_event)
                opened.append(url)
            except PublishFailed as exc:
                logger.warning("Subscribe skipped relay %s: %s", url, exc)
        if not opened:
            raise PublishFailed("could not open a subscription on any relay")
        return PoolSubscription(self, sub_id, opened)

    async def close(self):
        for conn in self._connections.values():
            await conn.close()
        self._connections.clear()
