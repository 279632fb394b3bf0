# nostr_identity/nip44.py
"""
NIP-44 v2 conversation-key encryption.

conversation_key = HKDF-extract(sha256, salt="nip44-v2", ikm=ecdh_x)
per message:      HKDF-expand(conversation_key, info=nonce, 76)
                  -> chacha_key(32) | chacha_nonce(12) | hmac_key(32)
payload:          base64(0x02 | nonce(32) | ciphertext | mac(32))
"""

import base64
import hashlib
import hmac
import math
import os

import coincurve
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from nostr_identity.errors import DecryptionFailed, PlaintextTooLarge
from nostr_identity.keys import validate_public_key

VERSION = 2
SALT = b"nip44-v2"
MIN_PLAINTEXT_SIZE = 0
MAX_PLAINTEXT_SIZE = 65535


def get_conversation_key(secret: bytes, peer_pubkey_hex: str) -> bytes:
    peer = coincurve.PublicKey(b"\x02" + bytes.fromhex(validate_public_key(peer_pubkey_hex)))
    shared_x = peer.multiply(secret).format(compressed=True)[1:]
    return hmac.new(SALT, shared_x, hashlib.sha256).digest()


def _message_keys(conversation_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    if len(conversation_key) != 32:
        raise DecryptionFailed("invalid conversation key length")
    if len(nonce) != 32:
        raise DecryptionFailed("invalid nonce length")
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return okm[0:32], okm[32:44], okm[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: str) -> bytes:
    raw = plaintext.encode("utf-8")
    if not MIN_PLAINTEXT_SIZE <= len(raw) <= MAX_PLAINTEXT_SIZE:
        raise PlaintextTooLarge(f"plaintext size {len(raw)} outside 0..{MAX_PLAINTEXT_SIZE}")
    prefix = len(raw).to_bytes(2, "big")
    return prefix + raw + b"\x00" * (calc_padded_len(len(raw)) - len(raw))


def _unpad(padded: bytes) -> str:
    unpadded_len = int.from_bytes(padded[0:2], "big")
    raw = padded[2:2 + unpadded_len]
    if len(raw) != unpadded_len or len(padded) != 2 + calc_padded_len(unpadded_len):
        raise DecryptionFailed("invalid padding")
    return raw.decode("utf-8")


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 4-byte little-endian counter + 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
    return cipher.encryptor().update(data)


def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
    return hmac.new(key, aad + message, hashlib.sha256).digest()


def encrypt(plaintext: str, conversation_key: bytes, nonce: bytes | None = None) -> str:
    nonce = nonce if nonce is not None else os.urandom(32)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = _hmac_aad(hmac_key, ciphertext, nonce)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def _decode_payload(payload: str) -> tuple[bytes, bytes, bytes]:
    if not payload or payload[0] == "#":
        raise DecryptionFailed("unknown encryption version")
    if not 132 <= len(payload) <= 87472:
        raise DecryptionFailed(f"invalid payload length: {len(payload)}")
    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as exc:
        raise DecryptionFailed("payload is not valid base64") from exc
    if not 99 <= len(data) <= 65603:
        raise DecryptionFailed(f"invalid data length: {len(data)}")
    if data[0] != VERSION:
        raise DecryptionFailed(f"unknown encryption version {data[0]}")
    return data[1:33], data[33:-32], data[-32:]


def decrypt(payload: str, conversation_key: bytes) -> str:
    nonce, ciphertext, mac = _decode_payload(payload)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    expected = _hmac_aad(hmac_key, ciphertext, nonce)
    if not hmac.compare_digest(expected, mac):
        raise DecryptionFailed("invalid MAC")
    try:
        return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
    except UnicodeDecodeError as exc:
        raise DecryptionFailed("plaintext is not valid UTF-8") from exc


def encrypt_for(secret: bytes, peer_pubkey_hex: str, plaintext: str) -> str:
    return encrypt(plaintext, get_conversation_key(secret, peer_pubkey_hex))


def decrypt_from(secret: bytes, peer_pubkey_hex: str, payload: str) -> str:
    return decrypt(payload, get_conversation_key(secret, peer_pubkey_hex))
