# nostr_identity/keys.py
"""
Key and encoding helpers.

- secp256k1 secret keys (32 bytes) and BIP-340 x-only public keys (hex)
- NIP-19 bech32 encodings (npub / nsec)
- Lenient parsing of user input (bech32 or hex) into canonical hex

Pure functions, no state.
"""

import re

import bech32
import coincurve

from nostr_identity.errors import InvalidKeyFormat

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


# -----------------------------------------------------------
# Hex
# -----------------------------------------------------------

def hex_to_bytes(value: str) -> bytes:
    if len(value) % 2 != 0:
        raise InvalidKeyFormat("hex string must have even length")
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise InvalidKeyFormat(f"invalid hex string: {exc}") from exc


def bytes_to_hex(data: bytes) -> str:
    return data.hex()


def is_hex_key(value: str) -> bool:
    return bool(value) and _HEX64.match(value) is not None


# -----------------------------------------------------------
# secp256k1
# -----------------------------------------------------------

def generate_secret_key() -> bytes:
    return coincurve.PrivateKey().secret


def validate_secret_key(secret: bytes) -> bytes:
    if len(secret) != 32:
        raise InvalidKeyFormat(f"secret key must be 32 bytes, got {len(secret)}")
    try:
        coincurve.PrivateKey(secret)
    except ValueError as exc:
        raise InvalidKeyFormat("secret key is not a valid secp256k1 scalar") from exc
    return secret


def get_public_key(secret: bytes) -> str:
    """
    Derive the x-only (BIP-340) public key as lowercase hex.
    """
    sk = coincurve.PrivateKey(validate_secret_key(secret))
    return sk.public_key.format(compressed=True)[1:].hex()


def validate_public_key(pubkey_hex: str) -> str:
    if not is_hex_key(pubkey_hex):
        raise InvalidKeyFormat("public key must be 64 hex chars")
    try:
        coincurve.PublicKey(b"\x02" + bytes.fromhex(pubkey_hex))
    except ValueError as exc:
        raise InvalidKeyFormat("public key is not a point on secp256k1") from exc
    return pubkey_hex.lower()


# -----------------------------------------------------------
# NIP-19
# -----------------------------------------------------------

def bech32_encode_bytes(prefix: str, data: bytes) -> str:
    return bech32.bech32_encode(prefix, bech32.convertbits(data, 8, 5))


def bech32_decode_bytes(value: str) -> tuple[str, bytes]:
    """
    Decode any bech32 string into (prefix, payload bytes).

    The reference decoder caps strings at 90 chars, which is too short for
    ncryptsec, so longer strings are checked against the checksum directly.
    """
    value = value.strip()
    if value.lower() != value and value.upper() != value:
        raise InvalidKeyFormat("mixed-case bech32 string")
    value = value.lower()

    if len(value) <= 90:
        prefix, words = bech32.bech32_decode(value)
    else:
        prefix, words = _decode_long(value)

    if prefix is None or words is None:
        raise InvalidKeyFormat("invalid bech32 string")

    data = bech32.convertbits(words, 5, 8, False)
    if data is None:
        raise InvalidKeyFormat("invalid bech32 padding")
    return prefix, bytes(data)


def _decode_long(value: str):
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        return None, None
    prefix = value[:pos]
    if any(c not in bech32.CHARSET for c in value[pos + 1:]):
        return None, None
    words = [bech32.CHARSET.find(c) for c in value[pos + 1:]]
    if not bech32.bech32_verify_checksum(prefix, words):
        return None, None
    return prefix, words[:-6]


def npub_encode(pubkey_hex: str) -> str:
    return bech32_encode_bytes("npub", bytes.fromhex(validate_public_key(pubkey_hex)))


def nsec_encode(secret: bytes) -> str:
    return bech32_encode_bytes("nsec", validate_secret_key(secret))


def decode_nip19(value: str) -> tuple[str, str]:
    """
    Decode an npub / nsec / note into (prefix, hex).
    """
    prefix, data = bech32_decode_bytes(value)
    if prefix not in ("npub", "nsec", "note"):
        raise InvalidKeyFormat(f"unsupported NIP-19 prefix: {prefix}")
    if len(data) != 32:
        raise InvalidKeyFormat(f"{prefix} payload must be 32 bytes, got {len(data)}")
    return prefix, data.hex()


def parse_secret_key(text: str) -> bytes:
    """
    Accepts an nsec1... string or 64 hex chars.
    """
    text = (text or "").strip()
    if text[:5].lower() == "nsec1":
        prefix, hex_value = decode_nip19(text)
        return validate_secret_key(bytes.fromhex(hex_value))
    if is_hex_key(text):
        return validate_secret_key(bytes.fromhex(text))
    raise InvalidKeyFormat("expected an nsec or a 64-char hex secret key")


def parse_public_key(text: str) -> str:
    """
    Accepts an npub1... string or 64 hex chars; returns lowercase hex.
    """
    text = (text or "").strip()
    if text[:5].lower() == "npub1":
        _prefix, hex_value = decode_nip19(text)
        return validate_public_key(hex_value)
    return validate_public_key(text)


def short(pubkey_hex: str | None) -> str:
    """Truncated key for log lines."""
    if not pubkey_hex:
        return "?"
    return pubkey_hex[:8] + "..."
