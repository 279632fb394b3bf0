# tests/test_identity.py

import pytest

from nostr_identity import keycast
from nostr_identity.crypto import decrypt_secret_key
from nostr_identity.database import get_db
from nostr_identity.errors import InvalidKeyFormat, NoIdentity, SigningUnavailable
from nostr_identity.groups import join_group, list_groups
from nostr_identity.identity import IDENTITY_KEY, IdentityStore
from nostr_identity.keys import decode_nip19, generate_secret_key, get_public_key, nsec_encode
from nostr_identity.migration import migrate
from nostr_identity.models import BunkerIdentity, ExtensionIdentity, LocalIdentity
from nostr_identity.storage import read_json, write_json


class TestFreshInstall:
    @pytest.mark.asyncio
    async def test_autogenerates_local_identity(self):
        store = IdentityStore()
        identity = await store.load()
        assert isinstance(identity, LocalIdentity)
        assert identity.has_backed_up_secret is False
        assert identity.npub.startswith("npub1")

    @pytest.mark.asyncio
    async def test_backup_flag_flips_and_survives_reload(self):
        store = IdentityStore()
        identity = await store.load()

        nsec = await store.copy_secret()
        assert decode_nip19(nsec) == ("nsec", identity.secret_key)
        assert store.current.has_backed_up_secret is True

        reloaded = await IdentityStore().load()
        assert reloaded.public_key == identity.public_key
        assert reloaded.has_backed_up_secret is True

    @pytest.mark.asyncio
    async def test_backup_flag_never_goes_back(self):
        store = IdentityStore()
        await store.load()
        await store.copy_secret()
        await store.copy_secret()
        assert (await IdentityStore().load()).has_backed_up_secret is True

    @pytest.mark.asyncio
    async def test_load_is_stable(self):
        first = await IdentityStore().load()
        second = await IdentityStore().load()
        assert first == second


class TestLegacyRecords:
    @pytest.mark.asyncio
    async def test_untagged_local_record_upgraded(self):
        secret = generate_secret_key()
        write_json(IDENTITY_KEY, {
            "secretKey": secret.hex(),
            "publicKey": get_public_key(secret),
            "npub": "ignored",
            "hasBackedUpNsec": True,
        })

        identity = await IdentityStore().load()
        assert isinstance(identity, LocalIdentity)
        assert identity.public_key == get_public_key(secret)
        assert identity.has_backed_up_secret is True
        assert read_json(IDENTITY_KEY)["version"] == 2

    @pytest.mark.asyncio
    async def test_untagged_extension_sentinel_upgraded(self):
        pub = get_public_key(generate_secret_key())
        write_json(IDENTITY_KEY, {"secretKey": "NIP07_EXTENSION", "publicKey": pub, "npub": "x"})

        identity = await IdentityStore().load()
        assert isinstance(identity, ExtensionIdentity)
        assert identity.public_key == pub

    @pytest.mark.asyncio
    async def test_tagged_bunker_record_upgraded(self):
        remote = get_public_key(generate_secret_key())
        client = generate_secret_key()
        write_json(IDENTITY_KEY, {
            "type": "bunker",
            "bunkerPubkey": remote,
            "clientSecretKey": client.hex(),
            "relays": ["wss://relay.test"],
            "secret": "abc",
        })

        identity = await IdentityStore().load()
        assert isinstance(identity, BunkerIdentity)
        assert identity.remote_public_key == remote
        assert identity.public_key == remote
        assert identity.connection_secret == "abc"
        assert identity.relays == ("wss://relay.test",)

    @pytest.mark.asyncio
    async def test_corrupt_record_raises(self):
        write_json(IDENTITY_KEY, {"version": 2, "identity": {"type": "local", "secret_key": "zz"}})
        with pytest.raises(InvalidKeyFormat):
            await IdentityStore().load()


class TestReplace:
    @pytest.mark.asyncio
    async def test_import_secret_replaces_identity(self):
        store = IdentityStore()
        await store.load()
        secret = generate_secret_key()

        identity = await store.import_secret(nsec_encode(secret))
        assert identity.public_key == get_public_key(secret)
        assert store.current == identity
        assert (await IdentityStore().load()).public_key == identity.public_key

    @pytest.mark.asyncio
    async def test_import_garbage_leaves_identity(self):
        store = IdentityStore()
        before = await store.load()
        with pytest.raises(InvalidKeyFormat):
            await store.import_secret("not a key")
        assert store.current == before

    @pytest.mark.asyncio
    async def test_create_local_generates_new_key(self):
        store = IdentityStore()
        before = await store.load()
        after = await store.create_local()
        assert after.public_key != before.public_key
        assert after.has_backed_up_secret is False

    @pytest.mark.asyncio
    async def test_listeners_notified(self):
        store = IdentityStore()
        await store.load()
        seen = []
        unsubscribe = store.on_change(seen.append)

        created = await store.create_local()
        await store.clear()
        unsubscribe()
        await store.create_local()

        assert seen == [created, None]

    @pytest.mark.asyncio
    async def test_copy_secret_requires_local(self, extension):
        store = IdentityStore()
        await store.load()
        await store.login_with_extension(extension)
        with pytest.raises(InvalidKeyFormat):
            await store.copy_secret()

    @pytest.mark.asyncio
    async def test_export_secret_roundtrip(self, monkeypatch):
        import nostr_identity.crypto as crypto_mod
        monkeypatch.setattr(crypto_mod, "DEFAULT_LOG_N", 4)
        store = IdentityStore()
        identity = await store.load()

        encrypted = await store.export_secret("pw")
        assert decrypt_secret_key(encrypted, "pw") == identity.secret_bytes
        assert store.current.has_backed_up_secret is True


class TestExtensionLogin:
    @pytest.mark.asyncio
    async def test_login_with_host(self, extension):
        store = IdentityStore()
        await store.load()
        identity = await store.login_with_extension(extension)
        assert identity == store.current
        assert identity.public_key == extension.public_key

    @pytest.mark.asyncio
    async def test_waits_for_injected_host(self, extension):
        store = IdentityStore()
        await store.load()
        store.extension_host = extension
        identity = await store.login_with_extension(timeout=0.5)
        assert identity.public_key == extension.public_key

    @pytest.mark.asyncio
    async def test_missing_host_times_out(self):
        store = IdentityStore()
        before = await store.load()
        with pytest.raises(SigningUnavailable):
            await store.login_with_extension(timeout=0.2)
        assert store.current == before


class TestSigner:
    @pytest.mark.asyncio
    async def test_signer_tracks_current_identity(self):
        store = IdentityStore()
        first = await store.load()
        assert await (await store.signer()).get_public_key() == first.public_key

        second = await store.create_local()
        assert await (await store.signer()).get_public_key() == second.public_key

    @pytest.mark.asyncio
    async def test_no_identity(self):
        store = IdentityStore()
        with pytest.raises(NoIdentity):
            await store.signer()

    @pytest.mark.asyncio
    async def test_bunker_without_transport_unavailable(self):
        store = IdentityStore()
        await store.load()
        await store.set_bunker(BunkerIdentity(
            remote_public_key=get_public_key(generate_secret_key()),
            client_secret_key=generate_secret_key().hex(),
            relays=("wss://relay.test",),
            public_key=get_public_key(generate_secret_key()),
        ))
        with pytest.raises(SigningUnavailable):
            await store.signer()


class TestLogout:
    @pytest.mark.asyncio
    async def test_purges_dependent_state(self):
        store = IdentityStore()
        identity = await store.load()
        pub = identity.public_key
        other = get_public_key(generate_secret_key())

        db = get_db()
        with db:
            db.execute("INSERT INTO migrations VALUES (?, ?, ?, ?)", (pub, other, "e1", 1))
            db.execute("INSERT INTO migration_records VALUES (?, ?, ?, ?, ?)", (pub, "g", other, "e1", 1))
            db.execute("INSERT INTO subscriptions VALUES (?, ?, 1, 1, 'h', NULL)", (pub, "g"))
            db.execute("INSERT INTO device_registration VALUES (?, 1, 1, 'tok', 0)", (pub,))
        join_group(pub, "g")
        join_group(other, "g")
        keycast.store_credentials("a@b.c", "jwt", "bunker://x")

        await store.logout()

        assert store.current is None
        assert read_json(IDENTITY_KEY) is None
        assert keycast.get_credentials() is None
        for table, column in (
            ("migrations", "old_pubkey"),
            ("migration_records", "old_pubkey"),
            ("subscriptions", "owner_pubkey"),
            ("device_registration", "owner_pubkey"),
        ):
            assert db.execute(f"SELECT COUNT(*) FROM {table} WHERE {column}=?", (pub,)).fetchone()[0] == 0
        assert list_groups(pub) == []
        assert list_groups(other) == ["g"]

    @pytest.mark.asyncio
    async def test_purges_rows_left_by_migrated_keys(self, relay):
        store = IdentityStore(transport=relay)
        old = (await store.load()).public_key
        join_group(old, "G")
        new_identity = LocalIdentity.from_secret(generate_secret_key())
        result = await migrate(store, relay, new_identity)
        assert result.committed

        db = get_db()
        db.execute("INSERT INTO device_registration VALUES (?, 1, 1, 'tok', 0)", (old,))
        db.commit()

        await store.logout()

        for table in ("migration_records", "migrations", "memberships", "subscriptions", "device_registration"):
            assert db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] == 0, table

    @pytest.mark.asyncio
    async def test_next_load_generates_fresh_identity(self):
        store = IdentityStore()
        before = await store.load()
        await store.logout()
        after = await IdentityStore().load()
        assert after.public_key != before.public_key
