# nostr_identity/groups.py

import logging
import time

from nostr_identity.database import get_db
from nostr_identity.keys import short
from nostr_identity.storage import transaction

logger = logging.getLogger(__name__)


def join_group(public_key: str, group_id: str):
    with transaction() as tx:
        tx.execute(
            "INSERT OR IGNORE INTO memberships(public_key, group_id, joined_at) VALUES (?, ?, ?)",
            (public_key, group_id, int(time.time())),
        )
    logger.info("%s joined group %s", short(public_key), group_id)


def leave_group(public_key: str, group_id: str):
    with transaction() as tx:
        tx.execute("DELETE FROM memberships WHERE public_key=? AND group_id=?", (public_key, group_id))
    logger.info("%s left group %s", short(public_key), group_id)


def list_groups(public_key: str) -> list[str]:
    db = get_db()
    rows = db.execute(
        "SELECT group_id FROM memberships WHERE public_key=? ORDER BY joined_at, group_id",
        (public_key,),
    ).fetchall()
    return [r["group_id"] for r in rows]


def is_member(public_key: str, group_id: str) -> bool:
    db = get_db()
    row = db.execute(
        "SELECT 1 FROM memberships WHERE public_key=? AND group_id=?", (public_key, group_id)
    ).fetchone()
    return row is not None


def transfer_memberships(old_pubkey: str, new_pubkey: str, group_ids, db):
    """
    Copy *group_ids* from the old key to the new one inside the caller's
    transaction. The old rows stay; they belong to the old key's history.
    """
    now = int(time.time())
    for group_id in group_ids:
        db.execute(
            "INSERT OR IGNORE INTO memberships(public_key, group_id, joined_at) VALUES (?, ?, ?)",
            (new_pubkey, group_id, now),
        )
    logger.info("Moved %d membership(s) %s -> %s", len(group_ids), short(old_pubkey), short(new_pubkey))
