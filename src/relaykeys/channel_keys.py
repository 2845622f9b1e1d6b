"""
Per-resource symmetric keys: generation, wrapping, distribution, rotation.

A resource key is wrapped for each authorized principal as a conversation
payload between the wrapping principal and the recipient. The directory
only ever stores wrapped keys. Its insert-if-absent rule on (resource,
recipient, version) lets any number of holders distribute concurrently and
still converge on one wrap per recipient.

Channel messages are signed events encrypted under a resource key.

Ciphertext format (base64):
    [0]       format (0x01)
    [1-4]     key version (big-endian)
    [5-16]    nonce (12 bytes)
    [17+]     ChaCha20-Poly1305 ciphertext + 16-byte tag
"""

import asyncio
import base64
import binascii
import hashlib
import logging
import os
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .events import Event, EventTemplate, verify_event
from .keys import Identity, short_id
from .models import (
    ChannelMessage,
    DecryptedMessage,
    DistributionResult,
    RenderedMessage,
    ResourceKey,
    WrappedKey,
)
from .signer import LocalSigner, Signer
from .storage.key_directory import KeyDirectory
from .storage.resource_key_cache import ResourceKeyCache
from .types import (
    AEAD_NONCE_SIZE,
    CHANNEL_FORMAT_VERSION,
    CHANNEL_HEADER_SIZE,
    CHANNEL_MESSAGE_KIND,
    INVITE_LOOKUP_SALT,
    INVITE_SEED_SALT,
    PLACEHOLDER_DECRYPTION_FAILED,
    PLACEHOLDER_INVALID_SIGNATURE,
    PLACEHOLDER_NO_KEY,
    RESOURCE_KEY_SIZE,
    TAG_SIZE,
    WRAP_ALGORITHM,
    WRAP_FORMAT_VERSION,
    DecryptionError,
    InvalidEnvelopeError,
    InviteError,
    KeyAuthenticationError,
    NoKeyAvailableError,
    RelayKeysError,
    RotationConflictError,
    UnsupportedKeyFormatError,
)

logger = logging.getLogger("relaykeys.channel_keys")


def invite_code_hash(code: str) -> str:
    """Directory lookup key for an invite code. It reveals nothing about the invite secret."""
    return hashlib.sha256(INVITE_LOOKUP_SALT + code.encode("utf-8")).hexdigest()


def invite_identity(code: str) -> Identity:
    """The principal an invite code stands for. Whoever knows the code holds its secret."""
    return Identity.from_seed(hashlib.sha256(INVITE_SEED_SALT + code.encode("utf-8")).digest())


class ChannelKeyManager:
    """
    Key lifecycle for the resources a local principal belongs to.

    Bound to one Signer (the local principal) and one KeyDirectory. Unwrapped
    keys live only in the manager's ResourceKeyCache.

    Example usage:
        ```python
        manager = ChannelKeyManager(LocalSigner(alice), directory)
        await manager.setup("general", members=[bob.public_id])

        # later, after carol joins
        result = await manager.distribute_to_pending("general")
        ```
    """

    def __init__(
        self,
        signer: Signer,
        directory: KeyDirectory,
        cache: Optional[ResourceKeyCache] = None,
    ) -> None:
        self.signer = signer
        self.directory = directory
        self.cache = cache if cache is not None else ResourceKeyCache()
        self._public_id: Optional[str] = None

    async def local_public_id(self) -> str:
        if self._public_id is None:
            self._public_id = await self.signer.get_public_key()
        return self._public_id

    # MARK: - Primitives

    @staticmethod
    def generate(resource_id: str, version: int = 1) -> ResourceKey:
        """A fresh key. The caller must wrap it for at least the creator."""
        return ResourceKey.generate(resource_id, version)

    async def wrap_for(self, key: ResourceKey, recipient_public_id: str) -> WrappedKey:
        """Wrap a resource key for one recipient, stamped with our public id."""
        encoded = base64.b64encode(key.key).decode("ascii")
        ciphertext = await self.signer.encrypt(recipient_public_id, encoded)
        return WrappedKey(
            resource_id=key.resource_id,
            recipient_public_id=recipient_public_id,
            ciphertext=ciphertext,
            wrapper_version=WRAP_FORMAT_VERSION,
            wrapped_by_public_id=await self.local_public_id(),
            wrapped_at=datetime.now(),
            key_version=key.version,
            algorithm=WRAP_ALGORITHM,
        )

    async def unwrap(self, wrapped: WrappedKey) -> ResourceKey:
        """
        Recover the resource key from a wrap addressed to us.

        Raises:
            UnsupportedKeyFormatError: Unknown wrap version, algorithm or
                payload format.
            KeyAuthenticationError: The wrap does not authenticate for us.
        """
        wrapped.check_format()

        if wrapped.recipient_public_id != await self.local_public_id():
            raise KeyAuthenticationError(
                f"Wrapped key is addressed to {short_id(wrapped.recipient_public_id)}"
            )
        return await _open_wrap(self.signer, wrapped)

    # MARK: - Lifecycle

    async def setup(self, resource_id: str, members: Optional[list[str]] = None) -> ResourceKey:
        """
        Creator path: generate version 1 and wrap it for the creator and
        every listed member in one batch.

        Raises:
            RotationConflictError: If the resource already has a key.
        """
        me = await self.local_public_id()
        key = self.generate(resource_id, version=1)
        recipients = list(dict.fromkeys([me, *(members or [])]))
        wraps = await asyncio.gather(*(self.wrap_for(key, r) for r in recipients))

        if not await self.directory.advance_version(resource_id, 0):
            raise RotationConflictError(resource_id, 0)

        for wrapped in wraps:
            await self.directory.put_wrapped_key(wrapped)
        await self.directory.mark_encrypted(resource_id)
        self.cache.store(key)

        logger.info("Set up encryption for %s with %d recipient(s)", resource_id, len(recipients))
        return key

    async def fetch(self, resource_id: str, version: Optional[int] = None) -> ResourceKey:
        """
        Our copy of a resource key: cached, or fetched and unwrapped.

        Args:
            resource_id: The resource.
            version: Key version, or None for the current one.

        Raises:
            NoKeyAvailableError: If no wrap is stored for us.
        """
        if version is None:
            version = await self.directory.current_version(resource_id)
            if version == 0:
                raise NoKeyAvailableError(resource_id)

        key = self.cache.retrieve(resource_id, version)
        if key is not None:
            return key

        wrapped = await self.directory.get_wrapped_key(
            resource_id, await self.local_public_id(), version
        )
        if wrapped is None:
            raise NoKeyAvailableError(resource_id, version)

        key = await self.unwrap(wrapped)
        self.cache.store(key)
        return key

    async def pending_recipients(self, resource_id: str) -> list[str]:
        """Authorized principals without a wrap of the current version."""
        version = await self.directory.current_version(resource_id)
        holders = await self.directory.recipients_with_key(resource_id, version)
        return [p for p in await self.directory.authorized(resource_id) if p not in holders]

    async def distribute_to_pending(self, resource_id: str) -> DistributionResult:
        """
        Wrap the current key for every authorized principal that lacks it.

        Idempotent: a second run with unchanged membership writes nothing.

        Raises:
            NoKeyAvailableError: If we do not hold the current key.
        """
        key = await self.fetch(resource_id)
        result = DistributionResult(resource_id=resource_id)

        for recipient in await self.pending_recipients(resource_id):
            try:
                wrapped = await self.wrap_for(key, recipient)
                if await self.directory.put_wrapped_key(wrapped):
                    result.written.append(recipient)
                else:
                    result.skipped.append(recipient)
            except RelayKeysError as e:
                logger.warning(
                    "Could not wrap %s v%d for %s: %s",
                    resource_id, key.version, short_id(recipient), e,
                )
                result.failed[recipient] = str(e)

        if result.written:
            logger.info(
                "Distributed %s v%d to %d recipient(s)",
                resource_id, key.version, len(result.written),
            )
        return result

    async def rotate(self, resource_id: str) -> ResourceKey:
        """
        Replace the resource key with a new version for current members.

        Older wraps stay in place, so members can still read history.

        Raises:
            NoKeyAvailableError: If the resource was never set up.
            RotationConflictError: If another holder rotated concurrently.
        """
        current = await self.directory.current_version(resource_id)
        if current == 0:
            raise NoKeyAvailableError(resource_id)

        me = await self.local_public_id()
        key = self.generate(resource_id, version=current + 1)
        recipients = list(dict.fromkeys([me, *await self.directory.authorized(resource_id)]))
        wraps = await asyncio.gather(*(self.wrap_for(key, r) for r in recipients))

        if not await self.directory.advance_version(resource_id, current):
            raise RotationConflictError(resource_id, current)

        for wrapped in wraps:
            await self.directory.put_wrapped_key(wrapped)
        self.cache.store(key)

        logger.info("Rotated %s to v%d for %d recipient(s)", resource_id, key.version, len(recipients))
        return key

    async def distribute_all_pending(self) -> dict[str, DistributionResult]:
        """Sweep every encrypted resource we hold the current key for."""
        me = await self.local_public_id()
        results = {}
        for resource_id in await self.directory.encrypted_resources():
            version = await self.directory.current_version(resource_id)
            if await self.directory.get_wrapped_key(resource_id, me, version) is None:
                continue
            try:
                results[resource_id] = await self.distribute_to_pending(resource_id)
            except RelayKeysError as e:
                logger.warning("Distribution for %s failed: %s", resource_id, e)
        return results


    # MARK: - Invites

    async def wrap_for_invite(self, key: ResourceKey, code: str) -> WrappedKey:
        """
        Wrap a resource key for an invite code and store it under the code's
        hash, so the invitee can redeem it with no holder online.

        Raises:
            InviteError: If the code already carries a wrap.
        """
        invitee = invite_identity(code)
        wrapped = await self.wrap_for(key, invitee.public_id)
        if not await self.directory.put_invite_key(invite_code_hash(code), wrapped):
            raise InviteError("Invite code is already in use")
        logger.info("Wrapped %s v%d for invite %s", key.resource_id, key.version, short_id(invitee.public_id))
        return wrapped

    async def create_invite(self, resource_id: str, code: str) -> WrappedKey:
        """Wrap the current key for an invite, setting the resource up first if it has no key."""
        if await self.directory.current_version(resource_id) == 0:
            await self.setup(resource_id)
        return await self.wrap_for_invite(await self.fetch(resource_id), code)

    async def redeem_invite(self, code: str, resource_id: str) -> ResourceKey:
        """
        Invitee path: unwrap the key left for an invite code and store a wrap
        for ourselves.

        The key is the version current when the invite was made. After a
        rotation the invitee still has to ask the ledger for the new one.

        Raises:
            NoKeyAvailableError: If no wrap is stored for the code.
            InviteError: If the invite belongs to another resource.
            KeyAuthenticationError: If the wrap does not open with the code.
        """
        wrapped = await self.directory.get_invite_key(invite_code_hash(code))
        if wrapped is None:
            raise NoKeyAvailableError(resource_id)
        if wrapped.resource_id != resource_id:
            raise InviteError(f"Invite is not for resource {resource_id}")

        wrapped.check_format()
        invitee = invite_identity(code)
        if wrapped.recipient_public_id != invitee.public_id:
            raise KeyAuthenticationError("Invite wrap is not addressed to this code")
        key = await _open_wrap(LocalSigner(invitee), wrapped)

        await self.directory.put_wrapped_key(await self.wrap_for(key, await self.local_public_id()))
        self.cache.store(key)
        logger.info("Redeemed invite for %s v%d", resource_id, key.version)
        return key

    async def revoke_invite(self, code: str) -> bool:
        return await self.directory.delete_invite_key(invite_code_hash(code))


class ChannelCipher:
    """Signed, encrypted channel messages under resource keys."""

    def __init__(self, manager: ChannelKeyManager) -> None:
        self.manager = manager

    async def encrypt(self, content: str, resource_id: str) -> str:
        """
        Sign content as the local principal and encrypt it under the current
        resource key.

        Raises:
            NoKeyAvailableError: If we hold no key; nothing is sent in clear.
        """
        key = await self.manager.fetch(resource_id)
        event = await self.manager.signer.sign_event(
            EventTemplate(
                kind=CHANNEL_MESSAGE_KIND,
                content=content,
                tags=[["h", resource_id]],
            )
        )

        header = bytes([CHANNEL_FORMAT_VERSION]) + key.version.to_bytes(4, "big")
        nonce = os.urandom(AEAD_NONCE_SIZE)
        ciphertext = ChaCha20Poly1305(key.key).encrypt(
            nonce, event.to_json().encode("utf-8"), header
        )
        return base64.b64encode(header + nonce + ciphertext).decode("ascii")

    async def decrypt(self, ciphertext: str, resource_id: str) -> DecryptedMessage:
        """
        Decrypt a channel message with the key version it names.

        Raises:
            InvalidEnvelopeError: Malformed ciphertext or payload.
            NoKeyAvailableError: No key for the embedded version.
            DecryptionError: Ciphertext does not authenticate.
        """
        try:
            data = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise InvalidEnvelopeError("Channel message is not base64") from e

        if len(data) < CHANNEL_HEADER_SIZE + TAG_SIZE:
            raise InvalidEnvelopeError("Channel message too short")
        if data[0] != CHANNEL_FORMAT_VERSION:
            raise InvalidEnvelopeError(f"Unsupported channel message format: {data[0]}")

        header = data[:5]
        version = int.from_bytes(data[1:5], "big")
        nonce = data[5:CHANNEL_HEADER_SIZE]

        key = await self.manager.fetch(resource_id, version)
        try:
            plaintext = ChaCha20Poly1305(key.key).decrypt(nonce, data[CHANNEL_HEADER_SIZE:], header)
        except InvalidTag as e:
            raise DecryptionError(f"Channel message for {resource_id} did not authenticate") from e

        try:
            event = Event.from_json(plaintext.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise InvalidEnvelopeError("Channel message payload is not UTF-8") from e

        valid = (
            verify_event(event)
            and event.kind == CHANNEL_MESSAGE_KIND
            and resource_id in event.tag_values("h")
        )
        return DecryptedMessage(
            content=event.content,
            sender_public_id=event.pubkey,
            valid=valid,
            key_version=version,
        )

    async def render(self, messages: list[ChannelMessage], resource_id: str) -> list[RenderedMessage]:
        """
        Display form of stored messages.

        Never raises and never drops: every failure becomes a labeled
        placeholder in place of the message.
        """
        rendered = []
        for message in messages:
            rendered.append(await self._render_one(message, resource_id))
        return rendered

    async def _render_one(self, message: ChannelMessage, resource_id: str) -> RenderedMessage:
        try:
            decrypted = await self.decrypt(message.ciphertext, resource_id)
        except NoKeyAvailableError:
            return _placeholder(message, PLACEHOLDER_NO_KEY, "no_key")
        except RelayKeysError as e:
            logger.debug("Message %s failed to decrypt: %s", message.id, e)
            return _placeholder(message, PLACEHOLDER_DECRYPTION_FAILED, "decryption_failed")
        except Exception:
            logger.exception("Unexpected error decrypting message %s", message.id)
            return _placeholder(message, PLACEHOLDER_DECRYPTION_FAILED, "decryption_failed")

        sender_matches = (
            message.sender_public_id is None
            or message.sender_public_id == decrypted.sender_public_id
        )
        if not decrypted.valid or not sender_matches:
            return _placeholder(message, PLACEHOLDER_INVALID_SIGNATURE, "invalid_signature")

        return RenderedMessage(
            id=message.id,
            content=decrypted.content,
            sender_public_id=decrypted.sender_public_id,
            decrypted=True,
        )


def _placeholder(message: ChannelMessage, text: str, error: str) -> RenderedMessage:
    return RenderedMessage(
        id=message.id,
        content=text,
        sender_public_id=message.sender_public_id,
        decrypted=False,
        error=error,
    )


async def _open_wrap(signer: Signer, wrapped: WrappedKey) -> ResourceKey:
    try:
        encoded = await signer.decrypt(wrapped.wrapped_by_public_id, wrapped.ciphertext)
    except DecryptionError as e:
        raise KeyAuthenticationError(
            f"Wrapped key for {wrapped.resource_id} v{wrapped.key_version} did not authenticate"
        ) from e
    except InvalidEnvelopeError as e:
        raise UnsupportedKeyFormatError(f"Unreadable wrapped key payload: {e}") from e

    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UnsupportedKeyFormatError("Wrapped key payload is not base64") from e
    if len(raw) != RESOURCE_KEY_SIZE:
        raise UnsupportedKeyFormatError(f"Resource key must be {RESOURCE_KEY_SIZE} bytes")

    return ResourceKey(resource_id=wrapped.resource_id, version=wrapped.key_version, key=raw)
