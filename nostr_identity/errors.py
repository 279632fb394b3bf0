# nostr_identity/errors.py


class NostrIdentityError(Exception):
    """Base class for every error raised by the identity core."""
    pass


class InvalidKeyFormat(NostrIdentityError):
    """Malformed secret key, public key or pointer URI. The user must re-enter it."""
    pass


class NoIdentity(NostrIdentityError):
    """No current identity is loaded."""
    pass


class SigningRejected(NostrIdentityError):
    """The extension or remote signer declined the request."""
    pass


class SigningUnavailable(NostrIdentityError):
    """The signing backend cannot be reached (closed session, missing extension)."""
    pass


class EncryptionUnsupported(NostrIdentityError):
    """The backend cannot do conversation-key encryption. Never fall back to plaintext."""
    pass


class PlaintextTooLarge(NostrIdentityError):
    """Plaintext falls outside the size range a single encrypted payload can carry."""
    pass


class DecryptionFailed(NostrIdentityError):
    """Ciphertext is malformed, uses an unknown version, or fails authentication."""
    pass


class ConnectionTimeout(NostrIdentityError):
    """A remote-signer handshake did not complete in time."""
    pass


class RemoteIdentityMismatch(NostrIdentityError):
    """A reconnect produced a different remote key than the stored one."""

    def __init__(self, expected: str, received: str):
        super().__init__(f"remote signer key changed: expected {expected[:8]}..., got {received[:8]}...")
        self.expected = expected
        self.received = received


class MigrationProofIncomplete(NostrIdentityError):
    """A migration event is missing one of its two required valid signatures."""
    pass


class PublishFailed(NostrIdentityError):
    """No relay acknowledged the event."""
    pass


class KeycastError(NostrIdentityError):
    """Raised when a Keycast account operation fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
