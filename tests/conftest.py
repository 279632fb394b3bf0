# tests/conftest.py

import asyncio
import inspect
import json

import pytest

from nostr_identity import nip44
from nostr_identity.errors import PublishFailed
from nostr_identity.events import finalize_event, make_template
from nostr_identity.keys import generate_secret_key, get_public_key


@pytest.fixture(autouse=True)
def temp_data_dir(tmp_path, monkeypatch):
    """
    Point the data dir and database at a fresh temp directory per test.
    """
    monkeypatch.setenv("NOSTR_BASE_DIR", str(tmp_path / "nostr_data"))

    import nostr_identity.config as cfg
    monkeypatch.setattr(cfg, "BASE_DIR", tmp_path / "nostr_data")
    monkeypatch.setattr(cfg, "DB_PATH", tmp_path / "nostr_data" / "identity.db")
    (tmp_path / "nostr_data").mkdir(parents=True, exist_ok=True)

    # Reset DB connection between tests (close old connection first)
    import nostr_identity.database as db_mod
    if db_mod._conn is not None:
        db_mod._conn.close()
    monkeypatch.setattr(db_mod, "_conn", None)
    # DB_PATH binds at import time
    monkeypatch.setattr(db_mod, "DB_PATH", tmp_path / "nostr_data" / "identity.db")

    yield tmp_path

    if db_mod._conn is not None:
        db_mod._conn.close()
        db_mod._conn = None


# -----------------------------------------------------------
# In-memory relay
# -----------------------------------------------------------

def matches(filter: dict, event: dict) -> bool:
    if "kinds" in filter and event["kind"] not in filter["kinds"]:
        return False
    if "authors" in filter and event["pubkey"] not in filter["authors"]:
        return False
    if "ids" in filter and event["id"] not in filter["ids"]:
        return False
    for key, wanted in filter.items():
        if key.startswith("#"):
            values = [t[1] for t in event["tags"] if len(t) >= 2 and t[0] == key[1:]]
            if not set(values) & set(wanted):
                return False
    return True


class MemorySubscription:
    def __init__(self, relay, filter, on_event):
        self.relay = relay
        self.filter = filter
        self.on_event = on_event
        self.closed = False

    async def close(self):
        if not self.closed:
            self.closed = True
            self.relay.subscriptions.remove(self)


class MemoryRelay:
    """
    Relay transport that keeps events in a list and delivers them to
    matching subscriptions on the next loop iteration.
    """

    def __init__(self):
        self.events = []
        self.subscriptions = []
        self.fail_publish = False
        self.reject = None  # optional predicate(event) -> bool
        self._tasks = set()

    def with_relays(self, urls):
        return self

    async def publish_event(self, event):
        if self.fail_publish or (self.reject is not None and self.reject(event)):
            raise PublishFailed(f"event {event['id'][:8]} rejected")
        self.events.append(event)
        for sub in list(self.subscriptions):
            if matches(sub.filter, event):
                task = asyncio.get_running_loop().create_task(self._deliver(sub, event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sub, event):
        if sub.closed:
            return
        result = sub.on_event(event)
        if inspect.isawaitable(result):
            await result

    async def query(self, filter):
        found = [e for e in self.events if matches(filter, e)]
        return sorted(found, key=lambda e: e["created_at"], reverse=True)

    async def subscribe(self, filter, on_event):
        sub = MemorySubscription(self, filter, on_event)
        self.subscriptions.append(sub)
        return sub

    def published(self, kind):
        return [e for e in self.events if e["kind"] == kind]

    async def close(self):
        self.subscriptions.clear()


@pytest.fixture
def relay():
    return MemoryRelay()


# -----------------------------------------------------------
# NIP-07 host
# -----------------------------------------------------------

class FakeNip44:
    def __init__(self, secret):
        self._secret = secret

    async def encrypt(self, peer, plaintext):
        return nip44.encrypt_for(self._secret, peer, plaintext)

    async def decrypt(self, peer, ciphertext):
        return nip44.decrypt_from(self._secret, peer, ciphertext)


class FakeExtension:
    def __init__(self, secret=None, with_nip44=True):
        self.secret = secret or generate_secret_key()
        self.public_key = get_public_key(self.secret)
        self.nip44 = FakeNip44(self.secret) if with_nip44 else None
        self.refuse = False
        self.sign_as = None

    async def get_public_key(self):
        return self.public_key

    async def sign_event(self, template):
        if self.refuse:
            raise RuntimeError("User rejected the request")
        return finalize_event(template, self.sign_as or self.secret)


@pytest.fixture
def extension():
    return FakeExtension()


# -----------------------------------------------------------
# NIP-46 remote signer
# -----------------------------------------------------------

class FakeRemoteSigner:
    """
    Answers NIP-46 requests over a MemoryRelay.

    ``respond_secret`` signs the replies (defaults to the listening key) so a
    test can make a different key answer. ``auth_url`` makes the first reply
    to each method an authorization challenge.
    """

    def __init__(self, relay, user_secret=None, remote_secret=None, respond_secret=None):
        self.relay = relay
        self.user_secret = user_secret or generate_secret_key()
        self.user_public_key = get_public_key(self.user_secret)
        self.remote_secret = remote_secret or self.user_secret
        self.remote_public_key = get_public_key(self.remote_secret)
        self.respond_secret = respond_secret or self.remote_secret
        self.auth_url = None
        self.reject_methods = set()
        self.silent = False
        self.requests = []
        self._challenged = set()
        self._sub = None

    @property
    def bunker_uri(self):
        return f"bunker://{self.remote_public_key}?relay=wss://relay.test&secret=s3cret"

    async def start(self):
        self._sub = await self.relay.subscribe(
            {"kinds": [24133], "#p": [self.remote_public_key]}, self._on_request
        )

    async def stop(self):
        if self._sub is not None:
            await self._sub.close()

    async def _reply(self, client_pubkey, payload):
        content = nip44.encrypt_for(self.respond_secret, client_pubkey, json.dumps(payload))
        event = finalize_event(make_template(24133, content, [["p", client_pubkey]]), self.respond_secret)
        await self.relay.publish_event(event)

    async def _on_request(self, event):
        message = json.loads(nip44.decrypt_from(self.remote_secret, event["pubkey"], event["content"]))
        self.requests.append(message)
        if self.silent:
            return

        method, params, req_id = message["method"], message["params"], message["id"]
        if self.auth_url and req_id not in self._challenged:
            self._challenged.add(req_id)
            await self._reply(event["pubkey"], {"id": req_id, "result": "auth_url", "error": self.auth_url})
            return
        if method in self.reject_methods:
            await self._reply(event["pubkey"], {"id": req_id, "error": f"{method} denied"})
            return

        if method == "connect":
            result = "ack"
        elif method == "get_public_key":
            result = self.user_public_key
        elif method == "sign_event":
            result = json.dumps(finalize_event(json.loads(params[0]), self.user_secret))
        elif method == "nip44_encrypt":
            result = nip44.encrypt_for(self.user_secret, params[0], params[1])
        elif method == "nip44_decrypt":
            result = nip44.decrypt_from(self.user_secret, params[0], params[1])
        elif method == "ping":
            result = "pong"
        else:
            await self._reply(event["pubkey"], {"id": req_id, "error": f"unknown method {method}"})
            return
        await self._reply(event["pubkey"], {"id": req_id, "result": result})

    async def answer_nostrconnect(self, client_pubkey, secret):
        await self._reply(client_pubkey, {"id": "handshake", "result": secret})


@pytest.fixture
def remote_signer(relay):
    return FakeRemoteSigner(relay)


@pytest.fixture
def make_remote_signer(relay):
    def _make(**kwargs):
        return FakeRemoteSigner(relay, **kwargs)
    return _make


@pytest.fixture
def make_extension():
    return FakeExtension
