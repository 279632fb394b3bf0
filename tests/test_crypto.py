# tests/test_crypto.py

import pytest

from nostr_identity.crypto import decrypt_secret_key, encrypt_secret_key
from nostr_identity.errors import InvalidKeyFormat
from nostr_identity.keys import generate_secret_key, nsec_encode

# small scrypt cost keeps the suite fast
LOG_N = 4


class TestNcryptsec:
    def test_roundtrip(self):
        secret = generate_secret_key()
        encrypted = encrypt_secret_key(secret, "hunter2", log_n=LOG_N)
        assert encrypted.startswith("ncryptsec1")
        assert decrypt_secret_key(encrypted, "hunter2") == secret

    def test_random_salt(self):
        secret = generate_secret_key()
        assert encrypt_secret_key(secret, "pw", log_n=LOG_N) != encrypt_secret_key(secret, "pw", log_n=LOG_N)

    def test_wrong_password(self):
        encrypted = encrypt_secret_key(generate_secret_key(), "right", log_n=LOG_N)
        with pytest.raises(InvalidKeyFormat):
            decrypt_secret_key(encrypted, "wrong")

    def test_password_is_unicode_normalized(self):
        secret = generate_secret_key()
        # precomposed vs. combining form of the same text
        encrypted = encrypt_secret_key(secret, "\u00c5", log_n=LOG_N)
        assert decrypt_secret_key(encrypted, "A\u030a") == secret

    def test_rejects_other_bech32(self):
        with pytest.raises(InvalidKeyFormat):
            decrypt_secret_key(nsec_encode(generate_secret_key()), "pw")
