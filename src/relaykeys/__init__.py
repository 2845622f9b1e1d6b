"""
relaykeys - Remote signing and resource key distribution over relays

Python implementation of a remote signer delegation protocol and of
per-resource symmetric key wrapping, distribution and rotation, using
X25519 + Ed25519 + ChaCha20-Poly1305.
"""

from .keys import (
    SecretHandle,
    Identity,
    validate_public_id,
    verify_signature,
    fingerprint,
)
from .conversation import (
    ConversationKey,
    ConversationCipher,
    ConversationKeyCache,
    DecryptFailure,
    DecryptResult,
    derive_key,
    encrypt,
    decrypt,
)
from .events import (
    Event,
    EventTemplate,
    Filter,
    compute_event_id,
    finalize_event,
    verify_event,
)
from .transport import (
    Transport,
    Subscription,
    InMemoryRelay,
    InMemoryRelayNetwork,
    InMemoryTransport,
    BackoffConfig,
    ExponentialBackoff,
)
from .signer import Signer, LocalSigner
from .descriptor import ConnectionDescriptor, BunkerPointer, generate_secret
from .remote_signer import RemoteSignerSession, SignerConfig, SessionState
from .models import (
    ResourceKey,
    WrappedKey,
    KeyRequestStatus,
    KeyRequest,
    LedgerEventType,
    LedgerEvent,
    DistributionResult,
    FulfillmentReport,
    ChannelMessage,
    DecryptedMessage,
    RenderedMessage,
    SignerConnection,
)
from .storage import (
    ConnectionStorage,
    InMemoryConnectionStorage,
    FileConnectionStorage,
    ResourceKeyCache,
    KeyDirectory,
    InMemoryKeyDirectory,
    SQLiteKeyDirectory,
)
from .channel_keys import ChannelKeyManager, ChannelCipher, invite_code_hash, invite_identity
from .ledger import KeyRequestLedger
from .fulfiller import KeyRequestFulfiller, FulfillerConfig
from .types import (
    SIGNER_EVENT_KIND,
    CHANNEL_MESSAGE_KIND,
    CONNECT_ACK,
    PLACEHOLDER_NO_KEY,
    PLACEHOLDER_INVALID_SIGNATURE,
    PLACEHOLDER_DECRYPTION_FAILED,
    RelayKeysError,
    InvalidPublicKeyError,
    KeyDerivationError,
    InvalidSignatureError,
    EncryptionError,
    DecryptionError,
    InvalidEnvelopeError,
    InvalidDescriptorError,
    TransportError,
    TimeoutErrorBase,
    HandshakeTimeoutError,
    SignerTimeoutError,
    SessionCancelledError,
    SessionStateError,
    SignerRemoteError,
    NoKeyAvailableError,
    UnsupportedKeyFormatError,
    KeyAuthenticationError,
    RotationConflictError,
    InviteError,
    LedgerError,
    StorageError,
    PasswordRequiredError,
)

__version__ = "0.1.0"

__all__ = [
    # Keys
    "SecretHandle",
    "Identity",
    "validate_public_id",
    "verify_signature",
    "fingerprint",
    # Conversation
    "ConversationKey",
    "ConversationCipher",
    "ConversationKeyCache",
    "DecryptFailure",
    "DecryptResult",
    "derive_key",
    "encrypt",
    "decrypt",
    # Events
    "Event",
    "EventTemplate",
    "Filter",
    "compute_event_id",
    "finalize_event",
    "verify_event",
    # Transport
    "Transport",
    "Subscription",
    "InMemoryRelay",
    "InMemoryRelayNetwork",
    "InMemoryTransport",
    "BackoffConfig",
    "ExponentialBackoff",
    # Signers
    "Signer",
    "LocalSigner",
    "ConnectionDescriptor",
    "BunkerPointer",
    "generate_secret",
    "RemoteSignerSession",
    "SignerConfig",
    "SessionState",
    # Models
    "ResourceKey",
    "WrappedKey",
    "KeyRequestStatus",
    "KeyRequest",
    "LedgerEventType",
    "LedgerEvent",
    "DistributionResult",
    "FulfillmentReport",
    "ChannelMessage",
    "DecryptedMessage",
    "RenderedMessage",
    "SignerConnection",
    # Storage
    "ConnectionStorage",
    "InMemoryConnectionStorage",
    "FileConnectionStorage",
    "ResourceKeyCache",
    "KeyDirectory",
    "InMemoryKeyDirectory",
    "SQLiteKeyDirectory",
    # Resource keys
    "ChannelKeyManager",
    "invite_code_hash",
    "invite_identity",
    "ChannelCipher",
    "KeyRequestLedger",
    "KeyRequestFulfiller",
    "FulfillerConfig",
    # Constants
    "SIGNER_EVENT_KIND",
    "CHANNEL_MESSAGE_KIND",
    "CONNECT_ACK",
    "PLACEHOLDER_NO_KEY",
    "PLACEHOLDER_INVALID_SIGNATURE",
    "PLACEHOLDER_DECRYPTION_FAILED",
    # Errors
    "RelayKeysError",
    "InvalidPublicKeyError",
    "KeyDerivationError",
    "InvalidSignatureError",
    "EncryptionError",
    "DecryptionError",
    "InvalidEnvelopeError",
    "InvalidDescriptorError",
    "TransportError",
    "TimeoutErrorBase",
    "HandshakeTimeoutError",
    "SignerTimeoutError",
    "SessionCancelledError",
    "SessionStateError",
    "SignerRemoteError",
    "NoKeyAvailableError",
    "UnsupportedKeyFormatError",
    "KeyAuthenticationError",
    "RotationConflictError",
    "InviteError",
    "LedgerError",
    "StorageError",
    "PasswordRequiredError",
]
