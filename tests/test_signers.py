# tests/test_signers.py

import asyncio

import pytest

from nostr_identity.errors import (
    EncryptionUnsupported,
    RemoteIdentityMismatch,
    SigningRejected,
    SigningUnavailable,
)
from nostr_identity.events import make_template, verify_event
from nostr_identity.keys import generate_secret_key, get_public_key
from nostr_identity.signers import (
    ExtensionSigner,
    LocalSigner,
    SerializedSigner,
    SignerLocks,
    wait_for_extension,
)

PLAINTEXTS = ["", "x", "y" * 5000]


class TestLocalSigner:
    @pytest.mark.asyncio
    async def test_public_key_stable(self):
        signer = LocalSigner(generate_secret_key())
        assert await signer.get_public_key() == await signer.get_public_key()

    @pytest.mark.asyncio
    async def test_signs_valid_events(self):
        secret = generate_secret_key()
        event = await LocalSigner(secret).sign_event(make_template(1, "hi"))
        assert verify_event(event)
        assert event["pubkey"] == get_public_key(secret)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plaintext", PLAINTEXTS)
    async def test_encrypt_roundtrip(self, plaintext):
        a, b = LocalSigner(generate_secret_key()), LocalSigner(generate_secret_key())
        payload = await a.encrypt(await b.get_public_key(), plaintext)
        assert await b.decrypt(await a.get_public_key(), payload) == plaintext


class TestExtensionSigner:
    @pytest.mark.asyncio
    async def test_public_key_stable(self, extension):
        signer = ExtensionSigner(extension, extension.public_key)
        assert await signer.get_public_key() == extension.public_key
        assert await signer.get_public_key() == extension.public_key

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plaintext", PLAINTEXTS)
    async def test_encrypt_roundtrip(self, extension, plaintext):
        signer = ExtensionSigner(extension, extension.public_key)
        peer = LocalSigner(generate_secret_key())
        payload = await signer.encrypt(await peer.get_public_key(), plaintext)
        assert await peer.decrypt(extension.public_key, payload) == plaintext
        assert await signer.decrypt(await peer.get_public_key(), payload) == plaintext

    @pytest.mark.asyncio
    async def test_missing_nip44_is_hard_stop(self, make_extension):
        host = make_extension(with_nip44=False)
        signer = ExtensionSigner(host, host.public_key)
        with pytest.raises(EncryptionUnsupported):
            await signer.encrypt(get_public_key(generate_secret_key()), "secret")

    @pytest.mark.asyncio
    async def test_user_refusal_is_rejection(self, extension):
        extension.refuse = True
        signer = ExtensionSigner(extension, extension.public_key)
        with pytest.raises(SigningRejected):
            await signer.sign_event(make_template(1, "hi"))

    @pytest.mark.asyncio
    async def test_signature_by_other_key(self, extension):
        extension.sign_as = generate_secret_key()
        signer = ExtensionSigner(extension, extension.public_key)
        with pytest.raises(RemoteIdentityMismatch):
            await signer.sign_event(make_template(1, "hi"))

    @pytest.mark.asyncio
    async def test_no_host(self):
        signer = ExtensionSigner(None, get_public_key(generate_secret_key()))
        with pytest.raises(SigningUnavailable):
            await signer.sign_event(make_template(1, "hi"))


class TestWaitForExtension:
    @pytest.mark.asyncio
    async def test_returns_when_host_appears(self, extension):
        calls = []

        def probe():
            calls.append(1)
            return extension if len(calls) >= 3 else None

        assert await wait_for_extension(probe, timeout=1, interval=0.01) is extension

    @pytest.mark.asyncio
    async def test_times_out(self):
        with pytest.raises(SigningUnavailable):
            await wait_for_extension(lambda: None, timeout=0.05, interval=0.01)

    @pytest.mark.asyncio
    async def test_cancellable(self):
        task = asyncio.create_task(wait_for_extension(lambda: None, timeout=10, interval=0.01))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class SlowSigner(LocalSigner):
    def __init__(self, secret, log):
        super().__init__(secret)
        self.log = log

    async def sign_event(self, template):
        self.log.append(("start", template["content"]))
        await asyncio.sleep(0.01)
        self.log.append(("end", template["content"]))
        return await super().sign_event(template)


class TestSerializedSigner:
    @pytest.mark.asyncio
    async def test_same_key_calls_do_not_interleave(self):
        locks = SignerLocks()
        secret = generate_secret_key()
        log = []
        inner = SlowSigner(secret, log)
        a = SerializedSigner(inner, locks.for_key(get_public_key(secret)))
        b = SerializedSigner(inner, locks.for_key(get_public_key(secret)))

        await asyncio.gather(a.sign_event(make_template(1, "1")), b.sign_event(make_template(1, "2")))
        assert log in (
            [("start", "1"), ("end", "1"), ("start", "2"), ("end", "2")],
            [("start", "2"), ("end", "2"), ("start", "1"), ("end", "1")],
        )

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        locks = SignerLocks()
        log = []
        s1, s2 = generate_secret_key(), generate_secret_key()
        a = SerializedSigner(SlowSigner(s1, log), locks.for_key(get_public_key(s1)))
        b = SerializedSigner(SlowSigner(s2, log), locks.for_key(get_public_key(s2)))

        await asyncio.gather(a.sign_event(make_template(1, "1")), b.sign_event(make_template(1, "2")))
        assert [entry[0] for entry in log[:2]] == ["start", "start"]
