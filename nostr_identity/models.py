# nostr_identity/models.py
"""
Identity records.

An identity is one of three frozen variants, told apart by ``type``:

- LocalIdentity      secret key held by this client
- ExtensionIdentity  secret key held by a NIP-07 host object
- BunkerIdentity     secret key held by a NIP-46 remote signer

Records are never edited in place. Any change (including the backup flag)
produces a new record through ``dataclasses.replace``.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Union

from nostr_identity.errors import InvalidKeyFormat
from nostr_identity.keys import (
    get_public_key,
    hex_to_bytes,
    npub_encode,
    validate_public_key,
    validate_secret_key,
)

logger = logging.getLogger(__name__)

# Legacy untagged records marked extension logins with this sentinel
LEGACY_EXTENSION_SENTINEL = "NIP07_EXTENSION"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class LocalIdentity:
    secret_key: str
    public_key: str
    created_at: int = field(default_factory=_now_ms)
    has_backed_up_secret: bool = False
    type: str = field(default="local", init=False)

    @classmethod
    def from_secret(cls, secret: bytes, has_backed_up_secret: bool = False) -> "LocalIdentity":
        validate_secret_key(secret)
        return cls(
            secret_key=secret.hex(),
            public_key=get_public_key(secret),
            has_backed_up_secret=has_backed_up_secret,
        )

    @property
    def secret_bytes(self) -> bytes:
        return hex_to_bytes(self.secret_key)

    @property
    def npub(self) -> str:
        return npub_encode(self.public_key)

    def public_view(self) -> dict:
        return {
            "type": self.type,
            "public_key": self.public_key,
            "npub": self.npub,
            "created_at": self.created_at,
            "has_backed_up_secret": self.has_backed_up_secret,
        }


@dataclass(frozen=True)
class ExtensionIdentity:
    public_key: str
    created_at: int = field(default_factory=_now_ms)
    type: str = field(default="extension", init=False)

    @property
    def npub(self) -> str:
        return npub_encode(self.public_key)

    def public_view(self) -> dict:
        return {
            "type": self.type,
            "public_key": self.public_key,
            "npub": self.npub,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class BunkerIdentity:
    remote_public_key: str
    client_secret_key: str
    relays: tuple
    public_key: str
    connection_secret: str | None = None
    created_at: int = field(default_factory=_now_ms)
    type: str = field(default="bunker", init=False)

    @property
    def npub(self) -> str:
        return npub_encode(self.public_key)

    @property
    def client_secret_bytes(self) -> bytes:
        return hex_to_bytes(self.client_secret_key)

    def public_view(self) -> dict:
        return {
            "type": self.type,
            "public_key": self.public_key,
            "npub": self.npub,
            "remote_public_key": self.remote_public_key,
            "relays": list(self.relays),
            "created_at": self.created_at,
        }


Identity = Union[LocalIdentity, ExtensionIdentity, BunkerIdentity]


# -----------------------------------------------------------
# Serialization
# -----------------------------------------------------------

def identity_to_dict(identity: Identity) -> dict:
    data = asdict(identity)
    if isinstance(identity, BunkerIdentity):
        data["relays"] = list(identity.relays)
    return data


def identity_from_dict(data: dict) -> Identity:
    """
    Rebuild a tagged record. Raises InvalidKeyFormat on anything malformed.
    """
    kind = data.get("type")
    try:
        if kind == "local":
            secret = validate_secret_key(hex_to_bytes(data["secret_key"]))
            public_key = get_public_key(secret)
            if data.get("public_key") and data["public_key"] != public_key:
                raise InvalidKeyFormat("stored public key does not match secret key")
            return LocalIdentity(
                secret_key=data["secret_key"],
                public_key=public_key,
                created_at=data.get("created_at") or _now_ms(),
                has_backed_up_secret=bool(data.get("has_backed_up_secret", False)),
            )
        if kind == "extension":
            return ExtensionIdentity(
                public_key=validate_public_key(data["public_key"]),
                created_at=data.get("created_at") or _now_ms(),
            )
        if kind == "bunker":
            validate_secret_key(hex_to_bytes(data["client_secret_key"]))
            remote = validate_public_key(data["remote_public_key"])
            return BunkerIdentity(
                remote_public_key=remote,
                client_secret_key=data["client_secret_key"],
                relays=tuple(data.get("relays") or ()),
                public_key=validate_public_key(data.get("public_key") or remote),
                connection_secret=data.get("connection_secret"),
                created_at=data.get("created_at") or _now_ms(),
            )
    except (KeyError, TypeError) as exc:
        raise InvalidKeyFormat(f"identity record missing field {exc}") from exc
    raise InvalidKeyFormat(f"unknown identity type: {kind!r}")


def upgrade_legacy_record(data: dict) -> dict:
    """
    Convert a record written by older clients into the tagged schema.

    Two legacy shapes exist:
    - untagged camelCase ``{secretKey, publicKey, npub, hasBackedUpNsec?, createdAt?}``
      where ``secretKey == "NIP07_EXTENSION"`` meant an extension login;
    - tagged camelCase ``{type, secretKey|bunkerPubkey, ...}``.
    """
    kind = data.get("type")
    created_at = data.get("createdAt") or data.get("created_at") or _now_ms()

    if kind is None:
        if data.get("secretKey") == LEGACY_EXTENSION_SENTINEL:
            logger.info("Upgrading legacy extension identity record")
            return {"type": "extension", "public_key": data.get("publicKey"), "created_at": created_at}
        logger.info("Upgrading legacy local identity record")
        return {
            "type": "local",
            "secret_key": data.get("secretKey"),
            "public_key": data.get("publicKey"),
            "created_at": created_at,
            "has_backed_up_secret": bool(data.get("hasBackedUpNsec", False)),
        }

    if kind == "local" and "secretKey" in data:
        return {
            "type": "local",
            "secret_key": data["secretKey"],
            "public_key": data.get("publicKey"),
            "created_at": created_at,
            "has_backed_up_secret": bool(data.get("hasBackedUpNsec", False)),
        }
    if kind == "extension" and "publicKey" in data:
        return {"type": "extension", "public_key": data["publicKey"], "created_at": created_at}
    if kind == "bunker" and "bunkerPubkey" in data:
        return {
            "type": "bunker",
            "remote_public_key": data["bunkerPubkey"],
            "client_secret_key": data.get("clientSecretKey"),
            "relays": data.get("relays") or [],
            "public_key": data.get("publicKey") or data["bunkerPubkey"],
            "connection_secret": data.get("secret"),
            "created_at": created_at,
        }
    return data
