"""Signer interface and the in-process implementation."""

from abc import ABC, abstractmethod
from typing import Optional

from .conversation import ConversationCipher, ConversationKeyCache, DecryptFailure, DecryptResult
from .events import Event, EventTemplate, finalize_event
from .keys import Identity
from .types import DecryptionError, InvalidEnvelopeError


class Signer(ABC):
    """
    Whatever holds signing authority for a principal.

    A LocalSigner keeps the secret in process; a RemoteSignerSession asks a
    remote custodian over relays. Callers cannot tell them apart.
    """

    @abstractmethod
    async def get_public_key(self) -> str:
        """The public id of the principal this signer acts for."""
        ...

    @abstractmethod
    async def sign_event(self, template: EventTemplate) -> Event:
        """Sign an event template as the principal."""
        ...

    @abstractmethod
    async def encrypt(self, peer_public_id: str, plaintext: str) -> str:
        """Encrypt text for a peer under the pair's conversation key."""
        ...

    @abstractmethod
    async def decrypt(self, peer_public_id: str, ciphertext: str) -> str:
        """
        Decrypt a payload from a peer.

        Raises:
            DecryptionError: If the payload does not authenticate.
            InvalidEnvelopeError: If the payload is malformed or of an
                unsupported version.
        """
        ...


def plaintext_or_raise(result: DecryptResult) -> str:
    """Convert a DecryptResult into plaintext, raising the matching error."""
    if result.authenticated and result.plaintext is not None:
        return result.plaintext
    if result.error == DecryptFailure.AUTHENTICATION:
        raise DecryptionError("Payload failed to authenticate")
    if result.error == DecryptFailure.UNSUPPORTED_VERSION:
        raise InvalidEnvelopeError("Unsupported payload version")
    raise InvalidEnvelopeError("Malformed payload")


class LocalSigner(Signer):
    """Signer backed by a secret held in this process."""

    def __init__(self, identity: Identity, cache: Optional[ConversationKeyCache] = None) -> None:
        if identity.secret is None:
            raise ValueError("LocalSigner requires an identity with a secret")
        self.identity = identity
        self.cipher = ConversationCipher(identity, cache)

    @property
    def public_id(self) -> str:
        return self.identity.public_id

    async def get_public_key(self) -> str:
        return self.identity.public_id

    async def sign_event(self, template: EventTemplate) -> Event:
        return finalize_event(template, self.identity)

    async def encrypt(self, peer_public_id: str, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext, peer_public_id)

    async def decrypt(self, peer_public_id: str, ciphertext: str) -> str:
        return plaintext_or_raise(self.cipher.decrypt(ciphertext, peer_public_id))
