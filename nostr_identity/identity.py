# nostr_identity/identity.py

import asyncio
import inspect
import logging
from dataclasses import replace as dc_replace
from typing import Any, Callable, Optional

from nostr_identity import keycast
from nostr_identity.bunker import BunkerSession, SessionState
from nostr_identity.config import EXTENSION_WAIT_TIMEOUT
from nostr_identity.crypto import encrypt_secret_key
from nostr_identity.errors import InvalidKeyFormat, NoIdentity, SigningUnavailable
from nostr_identity.keys import generate_secret_key, nsec_encode, parse_secret_key, short, validate_public_key
from nostr_identity.models import (
    BunkerIdentity,
    ExtensionIdentity,
    Identity,
    LocalIdentity,
    identity_from_dict,
    identity_to_dict,
    upgrade_legacy_record,
)
from nostr_identity.signers import (
    BunkerSigner,
    ExtensionSigner,
    LocalSigner,
    SerializedSigner,
    Signer,
    SignerLocks,
    wait_for_extension,
)
from nostr_identity.storage import delete_key, read_json, transaction, write_json

logger = logging.getLogger(__name__)

IDENTITY_KEY = "peek_nostr_identity"
MIGRATION_STATE_KEY = "identity_migrating"
RECORD_VERSION = 2

# Tables whose rows hang off an identity and go away with it on logout
_DEPENDENT_TABLES = (
    ("migration_records", "old_pubkey"),
    ("migrations", "old_pubkey"),
    ("subscriptions", "owner_pubkey"),
    ("device_registration", "owner_pubkey"),
    ("memberships", "public_key"),
)


class IdentityStore:
    """
    Owns the single current identity.

    ``load()`` must run before anything else. Every mutation goes through
    ``replace()`` or ``clear()``, which hold one lock and write one
    transaction, so readers see either the old record or the new one.
    """

    def __init__(self, transport=None, extension_host=None, **session_options):
        self.transport = transport
        self.extension_host = extension_host
        self._session_options = session_options
        self._current: Optional[Identity] = None
        self._lock = asyncio.Lock()
        self._signer_locks = SignerLocks()
        self._bunker_session: Optional[BunkerSession] = None
        self._reopen_lock = asyncio.Lock()
        self._listeners: list[Callable[[Optional[Identity]], Any]] = []

    # -----------------------------------------------------------
    # Loading
    # -----------------------------------------------------------

    async def load(self) -> Identity:
        async with self._lock:
            record = read_json(IDENTITY_KEY)

            if record is None:
                identity = LocalIdentity.from_secret(generate_secret_key())
                self._write(identity)
                logger.info("Generated new local identity %s", short(identity.public_key))
            elif isinstance(record, dict) and record.get("version") == RECORD_VERSION:
                identity = identity_from_dict(record["identity"])
            else:
                identity = identity_from_dict(upgrade_legacy_record(record))
                self._write(identity)
                logger.info("Upgraded stored identity %s to version %d", short(identity.public_key), RECORD_VERSION)

            self._current = identity
        return identity

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def require_current(self) -> Identity:
        if self._current is None:
            raise NoIdentity("no identity loaded")
        return self._current

    # -----------------------------------------------------------
    # Mutation
    # -----------------------------------------------------------

    def _write(self, identity: Identity, db=None):
        write_json(IDENTITY_KEY, {"version": RECORD_VERSION, "identity": identity_to_dict(identity)}, db=db)

    async def replace(self, identity: Identity, db_work: Callable | None = None) -> Identity:
        """
        Make *identity* current. *db_work(tx)* runs inside the same
        transaction, so callers can move dependent rows atomically.
        """
        async with self._lock:
            with transaction() as tx:
                self._write(identity, db=tx)
                if db_work is not None:
                    db_work(tx)
            previous, self._current = self._current, identity

        if previous is None or previous.public_key != identity.public_key:
            logger.info(
                "Identity switched %s -> %s (%s)",
                short(previous.public_key) if previous else "none",
                short(identity.public_key),
                identity.type,
            )
            await self._drop_bunker_session(keep=identity)
        await self._notify(identity)
        return identity

    async def clear(self):
        async with self._lock:
            delete_key(IDENTITY_KEY)
            self._current = None
        await self._drop_bunker_session()
        await self._notify(None)

    @staticmethod
    def _migrated_from(tx, public_key: str) -> set[str]:
        """Keys that migrated, directly or through a chain, into *public_key*."""
        keys, frontier = {public_key}, [public_key]
        while frontier:
            key = frontier.pop()
            rows = tx.execute(
                "SELECT old_pubkey FROM migration_records WHERE new_pubkey=? "
                "UNION SELECT old_pubkey FROM migrations WHERE new_pubkey=?",
                (key, key),
            ).fetchall()
            for (old,) in rows:
                if old not in keys:
                    keys.add(old)
                    frontier.append(old)
        return keys

    async def logout(self):
        """
        Remove the identity together with every record tied to it, including
        the rows left behind by keys it migrated from.
        """
        identity = self.require_current()
        async with self._lock:
            with transaction() as tx:
                delete_key(IDENTITY_KEY, db=tx)
                delete_key(keycast.CREDENTIALS_KEY, db=tx)
                delete_key(MIGRATION_STATE_KEY, db=tx)
                keys = self._migrated_from(tx, identity.public_key)
                for key in keys:
                    for table, column in _DEPENDENT_TABLES:
                        tx.execute(f"DELETE FROM {table} WHERE {column}=?", (key,))
                    tx.execute("DELETE FROM migration_records WHERE new_pubkey=?", (key,))
                    tx.execute("DELETE FROM migrations WHERE new_pubkey=?", (key,))
            self._current = None
        logger.info("Logged out %s (%d keys purged)", short(identity.public_key), len(keys))
        await self._drop_bunker_session()
        await self._notify(None)

    async def create_local(self) -> LocalIdentity:
        return await self.replace(LocalIdentity.from_secret(generate_secret_key()))

    async def import_secret(self, text: str) -> LocalIdentity:
        secret = parse_secret_key(text)
        # an imported key is by definition already held elsewhere
        return await self.replace(LocalIdentity.from_secret(secret, has_backed_up_secret=True))

    async def login_with_extension(self, host=None, timeout: float = EXTENSION_WAIT_TIMEOUT) -> ExtensionIdentity:
        if host is None:
            host = await wait_for_extension(lambda: self.extension_host, timeout=timeout)
        public_key = validate_public_key(await host.get_public_key())
        self.extension_host = host
        return await self.replace(ExtensionIdentity(public_key=public_key))

    async def set_bunker(self, identity: BunkerIdentity) -> BunkerIdentity:
        return await self.replace(identity)

    async def adopt_bunker_session(self, session: BunkerSession) -> BunkerIdentity:
        identity = await self.replace(session.to_identity())
        previous, self._bunker_session = self._bunker_session, session
        if previous is not None and previous is not session:
            await previous.close()
        return identity

    # -----------------------------------------------------------
    # Secret backup
    # -----------------------------------------------------------

    def _require_local(self) -> LocalIdentity:
        identity = self.require_current()
        if not isinstance(identity, LocalIdentity):
            raise InvalidKeyFormat(f"{identity.type} identities have no local secret key")
        return identity

    async def _mark_backed_up(self, identity: LocalIdentity):
        if identity.has_backed_up_secret:
            return
        async with self._lock:
            updated = dc_replace(identity, has_backed_up_secret=True)
            self._write(updated)
            self._current = updated
        logger.info("Secret key for %s marked as backed up", short(identity.public_key))

    async def copy_secret(self) -> str:
        identity = self._require_local()
        nsec = nsec_encode(identity.secret_bytes)
        await self._mark_backed_up(identity)
        return nsec

    async def export_secret(self, password: str) -> str:
        identity = self._require_local()
        encrypted = encrypt_secret_key(identity.secret_bytes, password)
        await self._mark_backed_up(identity)
        return encrypted

    # -----------------------------------------------------------
    # Signers
    # -----------------------------------------------------------

    async def signer(self) -> Signer:
        """
        Signer for the current identity. Never cached by callers: after a
        switch the old key must not keep signing.
        """
        return await self.signer_for(self.require_current())

    async def signer_for(self, identity: Identity) -> Signer:
        if isinstance(identity, LocalIdentity):
            inner = LocalSigner(identity.secret_bytes)
        elif isinstance(identity, ExtensionIdentity):
            inner = ExtensionSigner(self.extension_host, identity.public_key)
        elif isinstance(identity, BunkerIdentity):
            inner = BunkerSigner(await self._bunker_session_for(identity))
        else:
            raise TypeError(f"unknown identity variant: {type(identity).__name__}")
        return SerializedSigner(inner, self._signer_locks.for_key(identity.public_key))

    def _live_session(self, identity: BunkerIdentity) -> Optional[BunkerSession]:
        session = self._bunker_session
        if (
            session is not None
            and not session.closed
            and session.state == SessionState.CONNECTED
            and session.user_public_key == identity.public_key
        ):
            return session
        return None

    async def _bunker_session_for(self, identity: BunkerIdentity) -> BunkerSession:
        session = self._live_session(identity)
        if session is not None:
            return session
        if self.transport is None:
            raise SigningUnavailable("no relay transport configured for bunker signing")

        # concurrent callers wait here and share the first caller's session
        async with self._reopen_lock:
            session = self._live_session(identity)
            if session is not None:
                return session
            logger.info("Reopening bunker session for %s", short(identity.public_key))
            session = await BunkerSession.reopen(identity, self.transport, **self._session_options)
            previous, self._bunker_session = self._bunker_session, session
        if previous is not None and previous is not session:
            await previous.close()
        return session

    @property
    def bunker_session(self) -> Optional[BunkerSession]:
        return self._bunker_session

    async def _drop_bunker_session(self, keep: Identity | None = None):
        session = self._bunker_session
        if session is None:
            return
        if isinstance(keep, BunkerIdentity) and session.user_public_key == keep.public_key:
            return
        self._bunker_session = None
        await session.close()

    # -----------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------

    def on_change(self, callback: Callable[[Optional[Identity]], Any]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    async def _notify(self, identity: Optional[Identity]):
        for callback in list(self._listeners):
            try:
                result = callback(identity)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Identity listener failed: %s", exc)
