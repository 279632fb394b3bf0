# nostr_identity/push.py
"""
Encrypted service channel to the push notification service.

Every action is one event addressed to the service key, with a payload
encrypted by the current signer (whatever backend holds the key):

    3079  register device      {"token": ...}   p, app, expiration
    3080  deregister device    {"token": ...}   p, app
    3081  subscribe to topic   {"filter": ...}  p, app, expiration
    3082  unsubscribe          {"filter": ...}  p, app

Local state changes only after the relay accepted the event.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from nostr_identity.config import (
    APP_NAME,
    PUSH_SERVICE_NPUB,
    REFRESH_THRESHOLD_SECONDS,
    TOKEN_EXPIRATION_SECONDS,
)
from nostr_identity.database import get_db
from nostr_identity.errors import NostrIdentityError
from nostr_identity.events import make_template, now
from nostr_identity.keys import parse_public_key, short
from nostr_identity.storage import transaction

logger = logging.getLogger(__name__)

KIND_REGISTER = 3079
KIND_DEREGISTER = 3080
KIND_SUBSCRIBE = 3081
KIND_UNSUBSCRIBE = 3082

CHAT_MESSAGE_KIND = 9


@dataclass(frozen=True)
class TopicFilter:
    kinds: tuple = (CHAT_MESSAGE_KIND,)
    tag_filters: dict = field(default_factory=dict)

    @classmethod
    def for_topic(cls, topic_id: str, mention: str | None = None) -> "TopicFilter":
        tags = {"h": [topic_id]}
        if mention:
            tags["p"] = [mention]
        return cls(kinds=(CHAT_MESSAGE_KIND,), tag_filters=tags)

    @classmethod
    def from_dict(cls, data: dict) -> "TopicFilter":
        tags = {k[1:]: list(v) for k, v in data.items() if k.startswith("#")}
        return cls(kinds=tuple(data.get("kinds", ())), tag_filters=tags)

    def to_dict(self) -> dict:
        data = {"kinds": list(self.kinds)}
        for name in sorted(self.tag_filters):
            data[f"#{name}"] = list(self.tag_filters[name])
        return data

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class PushService:
    def __init__(self, store, transport, service_pubkey: str = PUSH_SERVICE_NPUB, app_name: str = APP_NAME):
        self.store = store
        self.transport = transport
        self.service_pubkey = parse_public_key(service_pubkey)
        self.app_name = app_name

    # -----------------------------------------------------------
    # Channel
    # -----------------------------------------------------------

    async def _send(self, kind: int, payload: dict, expires: bool) -> tuple[str, int]:
        """
        Encrypt, sign and publish one service event.
        Returns (owner pubkey, created_at) once a relay accepted it.
        """
        signer = await self.store.signer()
        owner = await signer.get_public_key()
        content = await signer.encrypt(self.service_pubkey, json.dumps(payload))

        created_at = now()
        tags = [["p", self.service_pubkey], ["app", self.app_name]]
        if expires:
            tags.append(["expiration", str(created_at + TOKEN_EXPIRATION_SECONDS)])

        event = await signer.sign_event(make_template(kind, content, tags, created_at))
        await self.transport.publish_event(event)
        logger.info("Service event %d published for %s (%s)", kind, short(owner), event["id"][:8])
        return owner, created_at

    # -----------------------------------------------------------
    # Device
    # -----------------------------------------------------------

    async def register_device(self, token: str) -> bool:
        owner, created_at = await self._send(KIND_REGISTER, {"token": token}, expires=True)
        with transaction() as tx:
            tx.execute(
                """
                INSERT OR REPLACE INTO device_registration
                    (owner_pubkey, registered, token_timestamp, current_token, user_disabled)
                VALUES (?, 1, ?, ?, 0)
                """,
                (owner, created_at, token),
            )
        return True

    async def deregister_device(self) -> bool:
        """
        Tell the service to forget this device. Also drops every topic
        subscription and remembers that the user turned push off.
        """
        owner = self.store.require_current().public_key
        device = self.device_state(owner)
        if not device["current_token"]:
            logger.info("No device token registered for %s", short(owner))
            return False

        await self._send(KIND_DEREGISTER, {"token": device["current_token"]}, expires=False)
        with transaction() as tx:
            tx.execute(
                """
                INSERT OR REPLACE INTO device_registration
                    (owner_pubkey, registered, token_timestamp, current_token, user_disabled)
                VALUES (?, 0, 0, NULL, 1)
                """,
                (owner,),
            )
            tx.execute("DELETE FROM subscriptions WHERE owner_pubkey=?", (owner,))
        return True

    # -----------------------------------------------------------
    # Topics
    # -----------------------------------------------------------

    async def subscribe_topic(self, topic_id: str, topic_filter: TopicFilter | None = None) -> str:
        topic_filter = topic_filter or TopicFilter.for_topic(topic_id)
        owner, created_at = await self._send(KIND_SUBSCRIBE, {"filter": topic_filter.to_dict()}, expires=True)
        filter_hash = topic_filter.hash()
        with transaction() as tx:
            tx.execute(
                """
                INSERT OR REPLACE INTO subscriptions
                    (owner_pubkey, topic_id, subscribed, timestamp, filter_hash, filter)
                VALUES (?, ?, 1, ?, ?, ?)
                """,
                (owner, topic_id, created_at, filter_hash, topic_filter.canonical_json()),
            )
        logger.info("Subscribed %s to topic %s (filter %s)", short(owner), topic_id, filter_hash[:12])
        return filter_hash

    async def unsubscribe_topic(self, topic_id: str) -> bool:
        owner = self.store.require_current().public_key
        stored = self._subscription_row(owner, topic_id)
        # the service matches on the exact filter it was given
        if stored is not None and stored["filter"]:
            topic_filter = TopicFilter.from_dict(json.loads(stored["filter"]))
        else:
            topic_filter = TopicFilter.for_topic(topic_id)

        await self._send(KIND_UNSUBSCRIBE, {"filter": topic_filter.to_dict()}, expires=False)
        with transaction() as tx:
            tx.execute("DELETE FROM subscriptions WHERE owner_pubkey=? AND topic_id=?", (owner, topic_id))
        logger.info("Unsubscribed %s from topic %s", short(owner), topic_id)
        return True

    # -----------------------------------------------------------
    # State
    # -----------------------------------------------------------

    def _subscription_row(self, owner: str, topic_id: str):
        return get_db().execute(
            "SELECT * FROM subscriptions WHERE owner_pubkey=? AND topic_id=?", (owner, topic_id)
        ).fetchone()

    def device_state(self, owner: str) -> dict:
        row = get_db().execute(
            "SELECT * FROM device_registration WHERE owner_pubkey=?", (owner,)
        ).fetchone()
        if row is None:
            return {"registered": False, "token_timestamp": 0, "current_token": None, "user_disabled_push": False}
        return {
            "registered": bool(row["registered"]),
            "token_timestamp": row["token_timestamp"],
            "current_token": row["current_token"],
            "user_disabled_push": bool(row["user_disabled"]),
        }

    def subscriptions(self, owner: str) -> dict:
        rows = get_db().execute(
            "SELECT * FROM subscriptions WHERE owner_pubkey=? AND subscribed=1 ORDER BY topic_id", (owner,)
        ).fetchall()
        return {
            r["topic_id"]: {"subscribed": True, "timestamp": r["timestamp"], "filter_hash": r["filter_hash"]}
            for r in rows
        }

    def get_state(self, owner: str | None = None) -> dict:
        owner = owner or self.store.require_current().public_key
        return {"device": self.device_state(owner), "subscriptions": self.subscriptions(owner)}

    def is_subscribed(self, topic_id: str, owner: str | None = None) -> bool:
        owner = owner or self.store.require_current().public_key
        return topic_id in self.subscriptions(owner)

    # -----------------------------------------------------------
    # Refresh
    # -----------------------------------------------------------

    def device_needs_refresh(self, at: int, owner: str | None = None) -> bool:
        device = self.device_state(owner or self.store.require_current().public_key)
        if not device["registered"] or not device["token_timestamp"]:
            return False
        return at - device["token_timestamp"] > REFRESH_THRESHOLD_SECONDS

    def topics_needing_refresh(self, at: int, owner: str | None = None) -> list[str]:
        subs = self.subscriptions(owner or self.store.require_current().public_key)
        return [topic for topic, s in subs.items() if at - s["timestamp"] > REFRESH_THRESHOLD_SECONDS]

    async def check_and_refresh(self, at: int | None = None) -> dict:
        """
        Re-send registrations older than the refresh threshold.
        Failures are logged and counted; the next run tries again.
        """
        at = at if at is not None else now()
        owner = self.store.require_current().public_key
        counts = {"device": 0, "topics": 0, "failed": 0}

        if self.device_needs_refresh(at, owner):
            token = self.device_state(owner)["current_token"]
            try:
                await self.register_device(token)
                counts["device"] = 1
            except NostrIdentityError as exc:
                logger.error("Device registration refresh failed: %s", exc)
                counts["failed"] += 1

        for topic_id in self.topics_needing_refresh(at, owner):
            row = self._subscription_row(owner, topic_id)
            topic_filter: Optional[TopicFilter] = None
            if row is not None and row["filter"]:
                topic_filter = TopicFilter.from_dict(json.loads(row["filter"]))
            try:
                await self.subscribe_topic(topic_id, topic_filter)
                counts["topics"] += 1
            except NostrIdentityError as exc:
                logger.error("Subscription refresh failed for %s: %s", topic_id, exc)
                counts["failed"] += 1

        if counts["device"] or counts["topics"]:
            logger.info("Push refresh: device=%d topics=%d failed=%d", counts["device"], counts["topics"], counts["failed"])
        return counts
