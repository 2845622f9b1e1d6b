"""
Identity and key material for relaykeys.

A principal is one 32-byte seed. The Ed25519 public key derived from it is
the principal's public id (64 hex chars); key agreement uses X25519 with the
same seed, so peers only ever need to exchange public ids.

    seed -> Ed25519 signing key -> public id
    seed -> SHA-512(seed)[:32] -> X25519 scalar

A peer's X25519 public key is computed from its public id with the
birational map from Edwards25519 to Curve25519, u = (1 + y) / (1 - y).
"""

import hashlib
import os
from dataclasses import dataclass, field
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from .types import (
    SEED_SIZE,
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
    InvalidPublicKeyError,
    KeyDerivationError,
)

# Field prime for Curve25519 / Edwards25519
_P = 2**255 - 19


class SecretHandle:
    """
    Owner of a principal's secret seed.

    The seed never appears in repr() or str(); it is only exported through
    to_hex(), which exists so a signer session can persist its ephemeral
    client secret for silent reconnection.
    """

    __slots__ = ("_seed", "_signing_key", "_agreement_key", "_public_id")

    def __init__(self, seed: bytes) -> None:
        if len(seed) != SEED_SIZE:
            raise ValueError(f"Seed must be {SEED_SIZE} bytes, got {len(seed)}")

        self._seed = bytes(seed)
        self._signing_key = Ed25519PrivateKey.from_private_bytes(self._seed)
        self._agreement_key = X25519PrivateKey.from_private_bytes(
            hashlib.sha512(self._seed).digest()[:32]
        )
        self._public_id = self._signing_key.public_key().public_bytes_raw().hex()

    @classmethod
    def generate(cls) -> "SecretHandle":
        """Create a handle from a fresh random seed."""
        return cls(os.urandom(SEED_SIZE))

    @classmethod
    def from_hex(cls, secret_hex: str) -> "SecretHandle":
        """Restore a handle exported with to_hex()."""
        try:
            seed = bytes.fromhex(secret_hex)
        except ValueError as e:
            raise ValueError("Secret must be hex encoded") from e
        return cls(seed)

    @property
    def public_id(self) -> str:
        """The public id matching this secret."""
        return self._public_id

    def sign(self, data: bytes) -> bytes:
        """Sign data with the Ed25519 key."""
        return self._signing_key.sign(data)

    def exchange(self, remote_public_id: str) -> bytes:
        """
        Perform X25519 key agreement with a remote public id.

        Raises:
            InvalidPublicKeyError: If the public id cannot be decoded.
            KeyDerivationError: If the agreement yields a degenerate secret.
        """
        remote = agreement_public_key(remote_public_id)
        try:
            return self._agreement_key.exchange(remote)
        except ValueError as e:
            raise KeyDerivationError(f"Key agreement failed: {e}") from e

    def to_hex(self) -> str:
        """Export the raw seed as hex. Handle with care."""
        return self._seed.hex()

    def __repr__(self) -> str:
        return f"SecretHandle(public_id={short_id(self._public_id)})"


@dataclass(frozen=True)
class Identity:
    """
    A principal: a public id and, optionally, the secret behind it.

    Attributes:
        public_id: Ed25519 public key as 64 lowercase hex characters.
        secret: The secret handle, present only in the owning process.
    """

    public_id: str
    secret: Optional[SecretHandle] = field(default=None, repr=False, compare=False)

    @classmethod
    def generate(cls) -> "Identity":
        """Create an identity with a fresh random secret."""
        secret = SecretHandle.generate()
        return cls(public_id=secret.public_id, secret=secret)

    @classmethod
    def from_seed(cls, seed: bytes) -> "Identity":
        """
        Create an identity from a 32-byte seed.

        Raises:
            ValueError: If seed is not 32 bytes.
        """
        secret = SecretHandle(seed)
        return cls(public_id=secret.public_id, secret=secret)

    @classmethod
    def from_secret_hex(cls, secret_hex: str) -> "Identity":
        """Restore an identity from a hex-encoded seed."""
        secret = SecretHandle.from_hex(secret_hex)
        return cls(public_id=secret.public_id, secret=secret)

    @classmethod
    def public(cls, public_id: str) -> "Identity":
        """An identity known only by its public id."""
        validate_public_id(public_id)
        return cls(public_id=public_id.lower())

    @property
    def has_secret(self) -> bool:
        """Whether this process holds the secret for the identity."""
        return self.secret is not None


def validate_public_id(public_id: str) -> bytes:
    """
    Decode and validate a public id.

    Returns:
        The 32 raw public key bytes.

    Raises:
        InvalidPublicKeyError: If the id is not 64 hex characters.
    """
    if not isinstance(public_id, str) or len(public_id) != PUBLIC_KEY_SIZE * 2:
        raise InvalidPublicKeyError(f"Public id must be {PUBLIC_KEY_SIZE * 2} hex characters")
    try:
        return bytes.fromhex(public_id)
    except ValueError as e:
        raise InvalidPublicKeyError(f"Public id is not hex: {public_id!r}") from e


def agreement_public_key(public_id: str) -> X25519PublicKey:
    """
    Convert a public id (Ed25519) into the matching X25519 public key.

    Raises:
        InvalidPublicKeyError: If the id is malformed or not a curve point.
    """
    raw = validate_public_id(public_id)

    y = int.from_bytes(raw, "little") & ((1 << 255) - 1)
    if y >= _P:
        raise InvalidPublicKeyError("Public id is not a valid curve point")

    denominator = (1 - y) % _P
    if denominator == 0:
        raise InvalidPublicKeyError("Public id encodes the identity point")

    u = (1 + y) * pow(denominator, _P - 2, _P) % _P
    return X25519PublicKey.from_public_bytes(u.to_bytes(32, "little"))


def verify_signature(public_id: str, data: bytes, signature: bytes) -> bool:
    """
    Verify an Ed25519 signature made by a public id.

    Returns:
        True if the signature is valid, False otherwise (including malformed
        ids or signatures).
    """
    if len(signature) != SIGNATURE_SIZE:
        return False

    try:
        verifying_key = Ed25519PublicKey.from_public_bytes(validate_public_id(public_id))
        verifying_key.verify(signature, data)
        return True
    except (InvalidPublicKeyError, InvalidSignature, ValueError):
        return False


def fingerprint(public_id: str) -> str:
    """
    Generate a human-readable fingerprint for a public id.

    Returns:
        A fingerprint string like "A7B3 C9D1 E5F2 8A4B"
    """
    hash_bytes = hashlib.sha256(validate_public_id(public_id)).digest()
    hex_bytes = [f"{b:02X}" for b in hash_bytes[:8]]
    groups = [hex_bytes[i] + hex_bytes[i + 1] for i in range(0, 8, 2)]
    return " ".join(groups)


def short_id(public_id: Optional[str]) -> str:
    """Abbreviate a public id for log lines."""
    if not public_id:
        return "<none>"
    return f"{public_id[:12]}..."
