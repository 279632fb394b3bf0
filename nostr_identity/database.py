# nostr_identity/database.py

import logging
import sqlite3

from nostr_identity.config import DB_PATH, ensure_directories

logger = logging.getLogger(__name__)

_conn = None


def get_db():
    """
    Returns the process-wide SQLite connection and initializes the schema if needed.
    The whole core runs on one asyncio loop, so a single connection is enough.
    """
    global _conn
    if _conn is None:
        ensure_directories()

        _conn = sqlite3.connect(DB_PATH, check_same_thread=False)
        _conn.row_factory = sqlite3.Row

        # ---- Performance pragmas ----
        _conn.execute("PRAGMA journal_mode=WAL")
        _conn.execute("PRAGMA synchronous=NORMAL")

        # -----------------------------------------------------
        #  KEY/VALUE RECORDS (current identity, keycast creds)
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
        """)

        # -----------------------------------------------------
        #  MIGRATIONS (global old -> new lookup)
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                old_pubkey TEXT PRIMARY KEY,
                new_pubkey TEXT NOT NULL,
                event_id TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
        """)

        # -----------------------------------------------------
        #  MIGRATION RECORDS (one per old key + group)
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS migration_records (
                old_pubkey TEXT NOT NULL,
                group_id TEXT NOT NULL,
                new_pubkey TEXT NOT NULL,
                proof_event_id TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (old_pubkey, group_id)
            );
        """)

        # -----------------------------------------------------
        #  GROUP MEMBERSHIPS
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS memberships (
                public_key TEXT NOT NULL,
                group_id TEXT NOT NULL,
                joined_at INTEGER NOT NULL,
                PRIMARY KEY (public_key, group_id)
            );
        """)

        # -----------------------------------------------------
        #  PUSH: TOPIC SUBSCRIPTIONS
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                owner_pubkey TEXT NOT NULL,
                topic_id TEXT NOT NULL,
                subscribed INTEGER NOT NULL DEFAULT 1,
                timestamp INTEGER NOT NULL,
                filter_hash TEXT NOT NULL,
                filter TEXT NULL,
                PRIMARY KEY (owner_pubkey, topic_id)
            );
        """)

        # -----------------------------------------------------
        #  PUSH: DEVICE REGISTRATION
        # -----------------------------------------------------
        _conn.execute("""
            CREATE TABLE IF NOT EXISTS device_registration (
                owner_pubkey TEXT PRIMARY KEY,
                registered INTEGER NOT NULL DEFAULT 0,
                token_timestamp INTEGER NOT NULL DEFAULT 0,
                current_token TEXT NULL,
                user_disabled INTEGER NOT NULL DEFAULT 0
            );
        """)

        # ---- Indexes for common queries ----
        _conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_migration_records_new ON migration_records(new_pubkey)"
        )
        _conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_memberships_group ON memberships(group_id)"
        )

        # ---- Migrations for existing databases ----
        # Databases created before explicit deregistration tracking lack user_disabled.
        try:
            _conn.execute(
                "ALTER TABLE device_registration ADD COLUMN user_disabled INTEGER NOT NULL DEFAULT 0"
            )
            logger.info("Migration: added user_disabled column to device_registration")
        except sqlite3.OperationalError:
            pass  # column already exists

        _conn.commit()
        logger.info("Database initialized (WAL mode, indexes created)")

    return _conn


def close_db():
    global _conn
    if _conn is not None:
        _conn.close()
        _conn = None
