# nostr_identity/storage.py

import json
import logging
import sqlite3
import time
from contextlib import contextmanager

from nostr_identity.database import get_db

logger = logging.getLogger(__name__)


@contextmanager
def transaction():
    """
    Run several writes as one unit. Commits on success, rolls back on error.
    """
    db = get_db()
    try:
        with db:
            yield db
    except sqlite3.Error as exc:
        logger.error("Transaction rolled back: %s", exc)
        raise


def write_json(key: str, obj, db=None):
    """
    Upsert a JSON record. Commits immediately unless *db* is an open transaction.
    """
    if db is None:
        with transaction() as tx:
            return write_json(key, obj, db=tx)
    try:
        db.execute(
            "INSERT OR REPLACE INTO kv(key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(obj), int(time.time())),
        )
    except (sqlite3.Error, TypeError) as exc:
        logger.error("Failed to write record %s: %s", key, exc)
        raise


def read_json(key: str, default=None, db=None):
    db = db or get_db()
    row = db.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
    if row is None:
        return default
    try:
        return json.loads(row["value"])
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON in record %s: %s", key, exc)
        raise


def delete_key(key: str, db=None):
    if db is None:
        with transaction() as tx:
            return delete_key(key, db=tx)
    db.execute("DELETE FROM kv WHERE key=?", (key,))
