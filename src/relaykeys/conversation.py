"""
Conversation cipher: pairwise symmetric encryption between two principals.

Either side derives the same conversation key from its own secret and the
other side's public id. Payloads are versioned so later cipher upgrades can
coexist with stored history.

Payload format v2 (base64 text):
    [0]       version (0x02)
    [1-32]    nonce (32 bytes)
    [33+]     ChaCha20-Poly1305 ciphertext + 16-byte tag

The plaintext is prefixed with its 2-byte big-endian length and zero padded
to a bucket boundary before encryption.
"""

import base64
import binascii
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .keys import Identity, SecretHandle, short_id
from .types import (
    AEAD_NONCE_SIZE,
    CONVERSATION_MAX_PLAINTEXT,
    CONVERSATION_MIN_PADDED,
    CONVERSATION_NONCE_SIZE,
    CONVERSATION_SALT,
    CONVERSATION_VERSION,
    TAG_SIZE,
    EncryptionError,
    KeyDerivationError,
)

logger = logging.getLogger("relaykeys.conversation")

_MESSAGE_KEY_INFO = b"relaykeys-message-v2"
_MIN_PAYLOAD_SIZE = 1 + CONVERSATION_NONCE_SIZE + 2 + CONVERSATION_MIN_PADDED + TAG_SIZE


@dataclass(frozen=True)
class ConversationKey:
    """Symmetric key shared by a pair of principals."""
    local_public_id: str
    remote_public_id: str
    key: bytes = field(repr=False)


class DecryptFailure(Enum):
    """Why a payload failed to decrypt."""
    MALFORMED = "malformed"
    UNSUPPORTED_VERSION = "unsupported_version"
    AUTHENTICATION = "authentication"


@dataclass
class DecryptResult:
    """Outcome of decrypting a payload. Never raised, always returned."""
    plaintext: Optional[str]
    sender_public_id: Optional[str]
    authenticated: bool
    error: Optional[DecryptFailure] = None

    @classmethod
    def failed(cls, error: DecryptFailure) -> "DecryptResult":
        return cls(plaintext=None, sender_public_id=None, authenticated=False, error=error)


def derive_key(secret: SecretHandle, remote_public_id: str) -> ConversationKey:
    """
    Derive the conversation key between a local secret and a remote public id.

    derive_key(a.secret, b.public_id) == derive_key(b.secret, a.public_id)

    Raises:
        InvalidPublicKeyError: If the remote id is malformed.
        KeyDerivationError: If key agreement fails.
    """
    shared_secret = secret.exchange(remote_public_id)
    if shared_secret == bytes(len(shared_secret)):
        raise KeyDerivationError("Key agreement produced an all-zero secret")

    hkdf = HKDF(algorithm=SHA256(), length=32, salt=CONVERSATION_SALT, info=b"")
    return ConversationKey(
        local_public_id=secret.public_id,
        remote_public_id=remote_public_id.lower(),
        key=hkdf.derive(shared_secret),
    )


def encrypt(plaintext: str, key: ConversationKey, nonce: Optional[bytes] = None) -> str:
    """
    Encrypt text under a conversation key.

    Args:
        plaintext: Text to encrypt.
        key: Conversation key for the pair.
        nonce: Optional 32-byte nonce (random when omitted).

    Returns:
        Base64 payload carrying the format version.

    Raises:
        EncryptionError: If the plaintext is too large or the nonce is invalid.
    """
    message_bytes = plaintext.encode("utf-8")
    if len(message_bytes) > CONVERSATION_MAX_PLAINTEXT:
        raise EncryptionError(
            f"Plaintext too large: {len(message_bytes)} bytes (max {CONVERSATION_MAX_PLAINTEXT})"
        )

    if nonce is None:
        nonce = os.urandom(CONVERSATION_NONCE_SIZE)
    elif len(nonce) != CONVERSATION_NONCE_SIZE:
        raise EncryptionError(f"Nonce must be {CONVERSATION_NONCE_SIZE} bytes")

    message_key, aead_nonce = _message_keys(key.key, nonce)
    header = bytes([CONVERSATION_VERSION])

    cipher = ChaCha20Poly1305(message_key)
    ciphertext = cipher.encrypt(aead_nonce, _pad(message_bytes), header)

    return base64.b64encode(header + nonce + ciphertext).decode("ascii")


def decrypt(payload: str, key: ConversationKey) -> DecryptResult:
    """
    Decrypt a payload produced by encrypt().

    Never raises: malformed input, unknown versions and authentication
    failures are reported through DecryptResult.error with
    authenticated=False.
    """
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, TypeError, ValueError):
        return DecryptResult.failed(DecryptFailure.MALFORMED)

    if not data:
        return DecryptResult.failed(DecryptFailure.MALFORMED)

    if data[0] != CONVERSATION_VERSION:
        return DecryptResult.failed(DecryptFailure.UNSUPPORTED_VERSION)

    if len(data) < _MIN_PAYLOAD_SIZE:
        return DecryptResult.failed(DecryptFailure.MALFORMED)

    header = data[:1]
    nonce = data[1 : 1 + CONVERSATION_NONCE_SIZE]
    ciphertext = data[1 + CONVERSATION_NONCE_SIZE :]

    message_key, aead_nonce = _message_keys(key.key, nonce)
    try:
        padded = ChaCha20Poly1305(message_key).decrypt(aead_nonce, ciphertext, header)
    except InvalidTag:
        return DecryptResult.failed(DecryptFailure.AUTHENTICATION)

    message_bytes = _unpad(padded)
    if message_bytes is None:
        return DecryptResult.failed(DecryptFailure.MALFORMED)

    try:
        text = message_bytes.decode("utf-8")
    except UnicodeDecodeError:
        return DecryptResult.failed(DecryptFailure.MALFORMED)

    return DecryptResult(
        plaintext=text,
        sender_public_id=key.remote_public_id,
        authenticated=True,
    )


def padded_length(length: int) -> int:
    """Bucketed length for a plaintext of the given size."""
    if length <= CONVERSATION_MIN_PADDED:
        return CONVERSATION_MIN_PADDED
    next_power = 1 << (length - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((length - 1) // chunk + 1)


def _pad(message: bytes) -> bytes:
    prefix = len(message).to_bytes(2, "big")
    return prefix + message + bytes(padded_length(len(message)) - len(message))


def _unpad(padded: bytes) -> Optional[bytes]:
    if len(padded) < 2:
        return None
    length = int.from_bytes(padded[:2], "big")
    message = padded[2 : 2 + length]
    if len(message) != length or len(padded) != 2 + padded_length(length):
        return None
    return message


def _message_keys(conversation_key: bytes, nonce: bytes) -> tuple:
    """Expand the per-message AEAD key and nonce."""
    hkdf = HKDF(
        algorithm=SHA256(),
        length=32 + AEAD_NONCE_SIZE,
        salt=nonce,
        info=_MESSAGE_KEY_INFO,
    )
    material = hkdf.derive(conversation_key)
    return material[:32], material[32:]


class ConversationKeyCache:
    """
    Bounded LRU cache of derived conversation keys.

    Owned by one ConversationCipher; entries live until evicted by size,
    evict() or clear(). Nothing is shared across cipher instances.
    """

    DEFAULT_MAX_ENTRIES = 256

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: "OrderedDict[str, ConversationKey]" = OrderedDict()
        self._max_entries = max_entries

    def get(self, remote_public_id: str) -> Optional[ConversationKey]:
        key = self._entries.get(remote_public_id)
        if key is not None:
            self._entries.move_to_end(remote_public_id)
        return key

    def put(self, key: ConversationKey) -> None:
        self._entries[key.remote_public_id] = key
        self._entries.move_to_end(key.remote_public_id)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def evict(self, remote_public_id: str) -> None:
        self._entries.pop(remote_public_id.lower(), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ConversationCipher:
    """
    Pairwise cipher bound to one local identity.

    Example usage:
        ```python
        cipher = ConversationCipher(alice)
        payload = cipher.encrypt("hello", bob.public_id)

        result = ConversationCipher(bob).decrypt(payload, alice.public_id)
        assert result.authenticated and result.plaintext == "hello"
        ```
    """

    def __init__(self, identity: Identity, cache: Optional[ConversationKeyCache] = None) -> None:
        if identity.secret is None:
            raise ValueError("ConversationCipher requires an identity with a secret")
        self._identity = identity
        self._cache = cache if cache is not None else ConversationKeyCache()

    @property
    def public_id(self) -> str:
        return self._identity.public_id

    @property
    def cache(self) -> ConversationKeyCache:
        return self._cache

    def derive_key(self, remote_public_id: str) -> ConversationKey:
        """Return the (cached) conversation key with a remote principal."""
        remote_public_id = remote_public_id.lower()
        key = self._cache.get(remote_public_id)
        if key is None:
            key = derive_key(self._identity.secret, remote_public_id)
            self._cache.put(key)
        return key

    def encrypt(self, plaintext: str, remote_public_id: str) -> str:
        """Encrypt text for a remote principal."""
        return encrypt(plaintext, self.derive_key(remote_public_id))

    def decrypt(self, payload: str, remote_public_id: str) -> DecryptResult:
        """
        Decrypt a payload from a remote principal.

        An undecodable remote id is reported as a malformed result rather
        than raised, so relay handlers can drop the event and carry on.
        """
        try:
            key = self.derive_key(remote_public_id)
        except Exception as e:
            logger.debug("Cannot derive key for %s: %s", short_id(remote_public_id), e)
            return DecryptResult.failed(DecryptFailure.MALFORMED)
        return decrypt(payload, key)
