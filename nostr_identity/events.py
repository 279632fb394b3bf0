# nostr_identity/events.py
"""
NIP-01 event helpers: canonical serialization, id hashing,
BIP-340 Schnorr signing and verification.
"""

import hashlib
import json
import logging
import os
import time

import coincurve

from nostr_identity.keys import get_public_key, is_hex_key

logger = logging.getLogger(__name__)


def now() -> int:
    return int(time.time())


def make_template(kind: int, content: str = "", tags: list | None = None, created_at: int | None = None) -> dict:
    return {
        "kind": kind,
        "content": content,
        "tags": [list(t) for t in (tags or [])],
        "created_at": created_at if created_at is not None else now(),
    }


def serialize_event(event: dict) -> bytes:
    """
    [0, pubkey, created_at, kind, tags, content] with no whitespace and
    unescaped unicode.
    """
    payload = [
        0,
        event["pubkey"],
        event["created_at"],
        event["kind"],
        event["tags"],
        event["content"],
    ]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def get_event_hash(event: dict) -> str:
    return hashlib.sha256(serialize_event(event)).hexdigest()


def finalize_event(template: dict, secret: bytes) -> dict:
    """
    Fill pubkey, id and sig on a copy of *template*.
    """
    event = {
        "kind": template["kind"],
        "content": template.get("content", ""),
        "tags": [list(t) for t in template.get("tags", [])],
        "created_at": template.get("created_at") or now(),
        "pubkey": get_public_key(secret),
    }
    event["id"] = get_event_hash(event)
    sig = coincurve.PrivateKey(secret).sign_schnorr(bytes.fromhex(event["id"]), os.urandom(32))
    event["sig"] = sig.hex()
    return event


def verify_event(event: dict) -> bool:
    if not isinstance(event, dict):
        return False
    try:
        if not is_hex_key(event.get("pubkey", "")) or not is_hex_key(event.get("id", "")):
            return False
        if get_event_hash(event) != event["id"]:
            return False
        sig = bytes.fromhex(event["sig"])
        if len(sig) != 64:
            return False
        pub = coincurve.PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pub.verify(sig, bytes.fromhex(event["id"]))
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Event verification failed: %s", exc)
        return False


def first_tag(event: dict, name: str) -> str | None:
    for tag in event.get("tags", []):
        if len(tag) >= 2 and tag[0] == name:
            return tag[1]
    return None


def tag_values(event: dict, name: str) -> list[str]:
    return [t[1] for t in event.get("tags", []) if len(t) >= 2 and t[0] == name]
