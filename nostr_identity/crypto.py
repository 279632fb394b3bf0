# nostr_identity/crypto.py
"""
Password-protected secret key export (NIP-49 "ncryptsec").

    ncryptsec = bech32("ncryptsec",
        0x02 | log_n | salt(16) | nonce(24) | key_security | xchacha20poly1305(secret))
"""

import unicodedata

import nacl.utils
from nacl import bindings
from nacl.exceptions import CryptoError

from nostr_identity.errors import InvalidKeyFormat
from nostr_identity.keys import bech32_decode_bytes, bech32_encode_bytes, validate_secret_key

NCRYPTSEC_VERSION = 0x02

KEY_KNOWN_INSECURE = 0x00
KEY_NOT_KNOWN_INSECURE = 0x01
KEY_SECURITY_UNKNOWN = 0x02

DEFAULT_LOG_N = 16


def _derive_key(password: str, salt: bytes, log_n: int) -> bytes:
    n = 1 << log_n
    return bindings.crypto_pwhash_scryptsalsa208sha256_ll(
        unicodedata.normalize("NFKC", password).encode("utf-8"),
        salt,
        n,
        8,
        1,
        dklen=32,
        maxmem=256 * n * 8 + 1024 * 1024,
    )


def encrypt_secret_key(
    secret: bytes,
    password: str,
    log_n: int | None = None,
    key_security: int = KEY_SECURITY_UNKNOWN,
) -> str:
    validate_secret_key(secret)
    log_n = log_n or DEFAULT_LOG_N
    salt = nacl.utils.random(16)
    nonce = nacl.utils.random(24)
    key = _derive_key(password, salt, log_n)
    aad = bytes([key_security])
    ciphertext = bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(secret, aad, nonce, key)
    payload = bytes([NCRYPTSEC_VERSION, log_n]) + salt + nonce + aad + ciphertext
    return bech32_encode_bytes("ncryptsec", payload)


def decrypt_secret_key(ncryptsec: str, password: str) -> bytes:
    prefix, payload = bech32_decode_bytes(ncryptsec)
    if prefix != "ncryptsec":
        raise InvalidKeyFormat(f"expected ncryptsec, got {prefix}")
    if len(payload) != 91 or payload[0] != NCRYPTSEC_VERSION:
        raise InvalidKeyFormat("unsupported ncryptsec payload")

    log_n = payload[1]
    salt = payload[2:18]
    nonce = payload[18:42]
    aad = payload[42:43]
    ciphertext = payload[43:]

    key = _derive_key(password, salt, log_n)
    try:
        secret = bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(ciphertext, aad, nonce, key)
    except CryptoError as exc:
        raise InvalidKeyFormat("wrong password or corrupted ncryptsec") from exc
    return validate_secret_key(secret)
