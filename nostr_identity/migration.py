# nostr_identity/migration.py
"""
Identity migration (kind 1776).

A migration binds an old key to a new key inside one group with two
signatures:

    proof  = kind 1776 by NEW, tags [p=OLD, h=group], content ""
    event  = kind 1776 by OLD, tags [p=NEW, h=group], content = JSON(proof)

Anyone can check the pair: each key vouches for the other and neither can
forge the other's half.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from nostr_identity.database import get_db
from nostr_identity.errors import (
    InvalidKeyFormat,
    MigrationProofIncomplete,
    NostrIdentityError,
    RemoteIdentityMismatch,
)
from nostr_identity.events import first_tag, make_template, now, tag_values, verify_event
from nostr_identity.groups import list_groups, transfer_memberships
from nostr_identity.identity import MIGRATION_STATE_KEY
from nostr_identity.keys import short
from nostr_identity.storage import delete_key, read_json, transaction, write_json

logger = logging.getLogger(__name__)

MIGRATION_KIND = 1776
MAX_MIGRATION_DEPTH = 10


@dataclass
class MigrationResult:
    old_public_key: str
    new_public_key: str
    succeeded: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    committed: bool = False


# -----------------------------------------------------------
# Building & verifying
# -----------------------------------------------------------

async def build_migration_event(old_signer, new_signer, group_id: str, created_at: int | None = None) -> dict:
    """
    Returns the outer migration event, signed by both keys. Neither signer's
    secret is touched here; each signs its own half.
    """
    old_pubkey = await old_signer.get_public_key()
    new_pubkey = await new_signer.get_public_key()
    created_at = created_at or now()

    proof = await new_signer.sign_event(
        make_template(MIGRATION_KIND, "", [["p", old_pubkey], ["h", group_id]], created_at)
    )
    event = await old_signer.sign_event(
        make_template(MIGRATION_KIND, json.dumps(proof), [["p", new_pubkey], ["h", group_id]], created_at)
    )
    verify_migration_event(event)
    return event


def verify_migration_event(event: dict) -> tuple[str, str, list[str]]:
    """
    Check both signatures and the cross references.
    Returns (old_pubkey, new_pubkey, group_ids); raises MigrationProofIncomplete.
    """
    if not isinstance(event, dict) or event.get("kind") != MIGRATION_KIND:
        raise MigrationProofIncomplete("not a migration event")
    if not verify_event(event):
        raise MigrationProofIncomplete("migration event signature is invalid")

    try:
        proof = json.loads(event.get("content") or "")
    except ValueError as exc:
        raise MigrationProofIncomplete("migration event carries no proof") from exc
    if not isinstance(proof, dict) or not verify_event(proof):
        raise MigrationProofIncomplete("proof signature is invalid")
    if proof.get("kind") != MIGRATION_KIND:
        raise MigrationProofIncomplete("proof is not a migration event")

    old_pubkey = event["pubkey"]
    new_pubkey = proof["pubkey"]
    if old_pubkey not in tag_values(proof, "p"):
        raise MigrationProofIncomplete("proof does not point back to the old key")
    if first_tag(event, "p") != new_pubkey:
        raise MigrationProofIncomplete("migration event names a different new key than the proof signer")
    if old_pubkey == new_pubkey:
        raise MigrationProofIncomplete("migration to the same key")

    groups = tag_values(event, "h")
    if sorted(groups) != sorted(tag_values(proof, "h")):
        raise MigrationProofIncomplete("proof and migration event disagree on groups")
    return old_pubkey, new_pubkey, groups


# -----------------------------------------------------------
# Persistence
# -----------------------------------------------------------

def _record(old_pubkey: str, new_pubkey: str, group_ids, event: dict, db):
    for group_id in group_ids:
        db.execute(
            """
            INSERT OR REPLACE INTO migration_records
                (old_pubkey, group_id, new_pubkey, proof_event_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (old_pubkey, group_id, new_pubkey, event["id"], event["created_at"]),
        )

    # latest created_at wins; ties go to the lower event id
    row = db.execute(
        "SELECT event_id, created_at FROM migrations WHERE old_pubkey=?", (old_pubkey,)
    ).fetchone()
    if row is None or event["created_at"] > row["created_at"] or (
        event["created_at"] == row["created_at"] and event["id"] < row["event_id"]
    ):
        db.execute(
            "INSERT OR REPLACE INTO migrations(old_pubkey, new_pubkey, event_id, created_at) VALUES (?, ?, ?, ?)",
            (old_pubkey, new_pubkey, event["id"], event["created_at"]),
        )
        return True
    return False


def get_migration(pubkey: str) -> Optional[dict]:
    row = get_db().execute(
        "SELECT new_pubkey, event_id, created_at FROM migrations WHERE old_pubkey=?", (pubkey,)
    ).fetchone()
    return dict(row) if row else None


def migration_records(old_pubkey: str) -> list[dict]:
    rows = get_db().execute(
        "SELECT * FROM migration_records WHERE old_pubkey=? ORDER BY group_id", (old_pubkey,)
    ).fetchall()
    return [dict(r) for r in rows]


def get_pending_migration() -> Optional[dict]:
    return read_json(MIGRATION_STATE_KEY)


# -----------------------------------------------------------
# Migrating the current identity
# -----------------------------------------------------------

async def migrate(store, transport, new_identity, group_ids=None, new_signer=None) -> MigrationResult:
    """
    Move the store's current identity to *new_identity* in each group.

    Every group is attempted; failures are reported per group. The current
    identity switches (and memberships move) only when every requested group
    was published and recorded. Calling again with just the failed groups is
    safe.
    """
    old_identity = store.require_current()
    if old_identity.public_key == new_identity.public_key:
        raise InvalidKeyFormat("cannot migrate an identity to itself")

    old_signer = await store.signer()
    if new_signer is None:
        new_signer = await store.signer_for(new_identity)
    new_pubkey = await new_signer.get_public_key()
    if new_pubkey != new_identity.public_key:
        raise RemoteIdentityMismatch(new_identity.public_key, new_pubkey)

    old_pubkey = old_identity.public_key
    groups = list(group_ids) if group_ids is not None else list_groups(old_pubkey)
    result = MigrationResult(old_public_key=old_pubkey, new_public_key=new_pubkey)

    write_json(MIGRATION_STATE_KEY, {"old": old_pubkey, "new": new_pubkey, "groups": groups, "started_at": now()})
    logger.info("Migrating %s -> %s in %d group(s)", short(old_pubkey), short(new_pubkey), len(groups))

    created_at = now()
    for group_id in groups:
        try:
            event = await build_migration_event(old_signer, new_signer, group_id, created_at)
            await transport.publish_event(event)
            with transaction() as tx:
                _record(old_pubkey, new_pubkey, [group_id], event, tx)
            result.succeeded.append(group_id)
            logger.info("Migration published for group %s (%s)", group_id, event["id"][:8])
        except NostrIdentityError as exc:
            logger.warning("Migration failed for group %s: %s", group_id, exc)
            result.failed.append({"group_id": group_id, "error": f"{type(exc).__name__}: {exc}"})

    if result.failed:
        return result

    moved = [r["group_id"] for r in migration_records(old_pubkey) if r["new_pubkey"] == new_pubkey]

    def _commit(tx):
        transfer_memberships(old_pubkey, new_pubkey, moved, tx)
        delete_key(MIGRATION_STATE_KEY, db=tx)

    await store.replace(new_identity, db_work=_commit)
    result.committed = True
    logger.info("Migration committed: %s is now %s", short(old_pubkey), short(new_pubkey))
    return result


# -----------------------------------------------------------
# Other people's migrations
# -----------------------------------------------------------

def handle_migration_event(event: dict) -> bool:
    """
    Store a migration seen on a relay. Invalid events are dropped.
    Returns True when it became the known migration for its old key.
    """
    try:
        old_pubkey, new_pubkey, groups = verify_migration_event(event)
    except MigrationProofIncomplete as exc:
        logger.debug("Ignoring migration event %s: %s", str(event.get("id"))[:8], exc)
        return False

    with transaction() as tx:
        updated = _record(old_pubkey, new_pubkey, groups, event, tx)
    if updated:
        logger.info("Stored migration %s -> %s", short(old_pubkey), short(new_pubkey))
    return updated


async def fetch_group_migrations(transport, group_id: str) -> int:
    events = await transport.query({"kinds": [MIGRATION_KIND], "#h": [group_id]})
    stored = sum(1 for event in events if handle_migration_event(event))
    logger.info("Group %s: %d migration event(s), %d stored", group_id, len(events), stored)
    return stored


def resolve(pubkey: str) -> str:
    """
    Follow the migration chain from *pubkey* to its current key.
    On a cycle, the target of the most recent migration in the cycle wins.
    """
    visited = []
    current = pubkey
    for _ in range(MAX_MIGRATION_DEPTH):
        if current in visited:
            latest = None
            for candidate in visited:
                m = get_migration(candidate)
                if m and (latest is None or (m["created_at"], _neg_id(m)) > (latest["created_at"], _neg_id(latest))):
                    latest = m
            return latest["new_pubkey"] if latest else current
        visited.append(current)
        m = get_migration(current)
        if m is None:
            break
        current = m["new_pubkey"]
    return current


def _neg_id(m: dict) -> tuple:
    # lower id wins ties
    return tuple(-b for b in bytes.fromhex(m["event_id"]))


def history(pubkey: str) -> list[str]:
    chain = [pubkey]
    current = pubkey
    while len(chain) < MAX_MIGRATION_DEPTH:
        m = get_migration(current)
        if m is None or m["new_pubkey"] in chain:
            break
        current = m["new_pubkey"]
        chain.append(current)
    return chain


def has_migrated(pubkey: str) -> bool:
    return get_migration(pubkey) is not None
