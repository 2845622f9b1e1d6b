"""Protocol constants and exception types for relaykeys."""

# Key sizes
SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64
RESOURCE_KEY_SIZE = 32

# Conversation cipher (payload format v2)
CONVERSATION_VERSION = 0x02
CONVERSATION_SALT = b"relaykeys-conversation-v2"
CONVERSATION_NONCE_SIZE = 32
CONVERSATION_MIN_PADDED = 32
CONVERSATION_MAX_PLAINTEXT = 65535
AEAD_NONCE_SIZE = 12
TAG_SIZE = 16

# Wrapped key format
WRAP_FORMAT_VERSION = 1
WRAP_ALGORITHM = "conv-v2"

# Channel message format
CHANNEL_FORMAT_VERSION = 0x01
CHANNEL_HEADER_SIZE = 1 + 4 + AEAD_NONCE_SIZE

# Event kinds
SIGNER_EVENT_KIND = 24133
CHANNEL_MESSAGE_KIND = 9420

# Remote signer protocol
CONNECT_ACK = "ack"
NOSTRCONNECT_SCHEME = "nostrconnect"
BUNKER_SCHEME = "bunker"
DEFAULT_HANDSHAKE_TIMEOUT = 60.0
DEFAULT_REQUEST_TIMEOUT = 30.0

# Invite codes
INVITE_LOOKUP_SALT = b"relaykeys-invite-lookup"
INVITE_SEED_SALT = b"relaykeys-invite-seed"

# Resource key cache
DEFAULT_KEY_CACHE_TTL_HOURS = 24

# Display placeholders
PLACEHOLDER_NO_KEY = "[Unable to decrypt - no key available]"
PLACEHOLDER_INVALID_SIGNATURE = "[Message signature invalid]"
PLACEHOLDER_DECRYPTION_FAILED = "[Decryption failed]"


# Exception types
class RelayKeysError(Exception):
    """Base exception for relaykeys errors."""
    pass


class InvalidPublicKeyError(RelayKeysError):
    """Invalid public id format or length."""
    pass


class KeyDerivationError(RelayKeysError):
    """Key derivation failed."""
    pass


class InvalidSignatureError(RelayKeysError):
    """Invalid signature format or verification failed."""
    pass


class EncryptionError(RelayKeysError):
    """Encryption failed."""
    pass


class DecryptionError(RelayKeysError):
    """Ciphertext did not authenticate."""
    pass


class InvalidEnvelopeError(RelayKeysError):
    """Malformed or unparseable envelope."""
    pass


class InvalidDescriptorError(RelayKeysError):
    """Malformed connection descriptor."""
    pass


class TransportError(RelayKeysError):
    """Relay unreachable or connection dropped."""
    pass


class TimeoutErrorBase(RelayKeysError):
    """Base class for retryable timeouts."""
    pass


class HandshakeTimeoutError(TimeoutErrorBase):
    """No valid connect response arrived within the handshake window."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Remote signer did not connect within {timeout:g}s")


class SignerTimeoutError(TimeoutErrorBase):
    """A single signer request timed out."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"Signer request {method!r} timed out after {timeout:g}s")


class SessionCancelledError(RelayKeysError):
    """The signer session was cancelled. Callers should stay silent."""

    def __init__(self) -> None:
        super().__init__("Signer session cancelled")


class SessionStateError(RelayKeysError):
    """Operation not allowed in the session's current state."""
    pass


class SignerRemoteError(RelayKeysError):
    """The remote signer answered with an error."""

    def __init__(self, method: str, message: str) -> None:
        self.method = method
        self.remote_message = message
        super().__init__(f"Signer rejected {method!r}: {message}")


class NoKeyAvailableError(RelayKeysError):
    """No resource key is available locally or in the directory."""

    def __init__(self, resource_id: str, version: "int | None" = None) -> None:
        self.resource_id = resource_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"No key available for resource {resource_id}{suffix}")


class UnsupportedKeyFormatError(RelayKeysError):
    """Wrapped key has an unknown format or wrapper version."""
    pass


class KeyAuthenticationError(RelayKeysError):
    """Wrapped key failed to authenticate for this recipient."""
    pass


class RotationConflictError(RelayKeysError):
    """Another holder rotated the resource key concurrently."""

    def __init__(self, resource_id: str, expected_version: int) -> None:
        self.resource_id = resource_id
        self.expected_version = expected_version
        super().__init__(
            f"Resource {resource_id} moved past version {expected_version} during rotation"
        )


class InviteError(RelayKeysError):
    """Invite code is already in use or does not belong to the resource."""
    pass


class LedgerError(RelayKeysError):
    """Key request ledger operation rejected."""
    pass


class StorageError(RelayKeysError):
    """Storage operation failed."""
    pass


class PasswordRequiredError(StorageError):
    """Raised when a password is required but not set."""

    def __init__(self) -> None:
        super().__init__("Password is required for file connection storage")
