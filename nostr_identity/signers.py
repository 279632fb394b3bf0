# nostr_identity/signers.py
"""
Signer backends.

Every higher-level protocol (migration, push) is written against the
``Signer`` interface only:

    get_public_key() -> hex
    sign_event(template) -> signed event
    encrypt(peer, plaintext) -> NIP-44 payload
    decrypt(peer, payload) -> plaintext

Backends: LocalSigner (secret in this process), ExtensionSigner (NIP-07 host
object), BunkerSigner (NIP-46 session). Calls for the same public key are
serialized through ``SerializedSigner``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from nostr_identity import nip44
from nostr_identity.errors import (
    EncryptionUnsupported,
    NostrIdentityError,
    RemoteIdentityMismatch,
    SigningRejected,
    SigningUnavailable,
)
from nostr_identity.events import finalize_event, verify_event
from nostr_identity.keys import get_public_key, validate_secret_key

logger = logging.getLogger(__name__)

_REJECTION_MARKERS = ("reject", "cancel", "denied", "declin")


class Signer(ABC):

    @abstractmethod
    async def get_public_key(self) -> str: ...

    @abstractmethod
    async def sign_event(self, template: dict) -> dict: ...

    @abstractmethod
    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str: ...

    @abstractmethod
    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str: ...


# -----------------------------------------------------------
# Local
# -----------------------------------------------------------

class LocalSigner(Signer):
    def __init__(self, secret: bytes):
        self._secret = validate_secret_key(secret)
        self._public_key = get_public_key(secret)

    async def get_public_key(self) -> str:
        return self._public_key

    async def sign_event(self, template: dict) -> dict:
        return finalize_event(template, self._secret)

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return nip44.encrypt_for(self._secret, peer_pubkey, plaintext)

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return nip44.decrypt_from(self._secret, peer_pubkey, ciphertext)


# -----------------------------------------------------------
# Extension (NIP-07)
# -----------------------------------------------------------

@runtime_checkable
class ExtensionHost(Protocol):
    """
    The object a NIP-07 extension injects. ``nip44`` is optional and, when
    present, exposes async ``encrypt(pubkey, plaintext)`` / ``decrypt(pubkey, ciphertext)``.
    """
    async def get_public_key(self) -> str: ...
    async def sign_event(self, template: dict) -> dict: ...


def has_nip44_support(host: Any) -> bool:
    return host is not None and getattr(host, "nip44", None) is not None


def _classify_host_error(exc: Exception) -> NostrIdentityError:
    message = str(exc).lower()
    if any(marker in message for marker in _REJECTION_MARKERS):
        return SigningRejected(f"extension rejected the request: {exc}")
    return SigningUnavailable(f"extension error: {exc}")


class ExtensionSigner(Signer):
    def __init__(self, host: Optional[ExtensionHost], public_key: str):
        self._host = host
        self._public_key = public_key

    def _require_host(self) -> ExtensionHost:
        if self._host is None:
            raise SigningUnavailable("no NIP-07 extension available")
        return self._host

    async def get_public_key(self) -> str:
        return self._public_key

    async def sign_event(self, template: dict) -> dict:
        host = self._require_host()
        try:
            event = await host.sign_event(dict(template))
        except NostrIdentityError:
            raise
        except Exception as exc:
            raise _classify_host_error(exc) from exc

        if not isinstance(event, dict) or not verify_event(event):
            raise SigningRejected("extension returned an invalid signature")
        if event["pubkey"] != self._public_key:
            raise RemoteIdentityMismatch(self._public_key, event["pubkey"])
        return event

    def _nip44(self):
        host = self._require_host()
        if not has_nip44_support(host):
            raise EncryptionUnsupported("extension does not support nip44 encryption")
        return host.nip44

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        api = self._nip44()
        try:
            return await api.encrypt(peer_pubkey, plaintext)
        except NostrIdentityError:
            raise
        except Exception as exc:
            raise _classify_host_error(exc) from exc

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        api = self._nip44()
        try:
            return await api.decrypt(peer_pubkey, ciphertext)
        except NostrIdentityError:
            raise
        except Exception as exc:
            raise _classify_host_error(exc) from exc


async def wait_for_extension(
    probe: Callable[[], Optional[ExtensionHost]],
    timeout: float = 3.0,
    interval: float = 0.1,
) -> ExtensionHost:
    """
    Poll *probe* until it returns a host object or *timeout* elapses.
    Cancelling the awaiting task stops the poll.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        host = probe()
        if host is not None:
            return host
        if loop.time() >= deadline:
            raise SigningUnavailable(f"no NIP-07 extension appeared within {timeout}s")
        await asyncio.sleep(interval)


# -----------------------------------------------------------
# Bunker (NIP-46)
# -----------------------------------------------------------

class BunkerSigner(Signer):
    """
    Delegates to an open ``BunkerSession``.
    """

    def __init__(self, session):
        self._session = session

    @property
    def session(self):
        return self._session

    async def get_public_key(self) -> str:
        if not self._session.user_public_key:
            raise SigningUnavailable("bunker session is not connected")
        return self._session.user_public_key

    async def sign_event(self, template: dict) -> dict:
        return await self._session.sign_event(template)

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._session.nip44_encrypt(peer_pubkey, plaintext)

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._session.nip44_decrypt(peer_pubkey, ciphertext)


# -----------------------------------------------------------
# Per-identity serialization
# -----------------------------------------------------------

class SignerLocks:
    """One asyncio.Lock per public key."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_key(self, public_key: str) -> asyncio.Lock:
        lock = self._locks.get(public_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[public_key] = lock
        return lock


class SerializedSigner(Signer):
    def __init__(self, inner: Signer, lock: asyncio.Lock):
        self.inner = inner
        self._lock = lock

    async def _locked(self, call: Callable[[], Awaitable[Any]]):
        async with self._lock:
            return await call()

    async def get_public_key(self) -> str:
        return await self.inner.get_public_key()

    async def sign_event(self, template: dict) -> dict:
        return await self._locked(lambda: self.inner.sign_event(template))

    async def encrypt(self, peer_pubkey: str, plaintext: str) -> str:
        return await self._locked(lambda: self.inner.encrypt(peer_pubkey, plaintext))

    async def decrypt(self, peer_pubkey: str, ciphertext: str) -> str:
        return await self._locked(lambda: self.inner.decrypt(peer_pubkey, ciphertext))
