"""Models for resource keys, wrapped keys, key requests and signer connections."""

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .types import (
    RESOURCE_KEY_SIZE,
    WRAP_ALGORITHM,
    WRAP_FORMAT_VERSION,
    InvalidEnvelopeError,
    UnsupportedKeyFormatError,
)


@dataclass(frozen=True)
class ResourceKey:
    """Raw symmetric key for one version of a resource. Never leaves memory."""
    resource_id: str
    version: int
    key: bytes = field(repr=False)

    @classmethod
    def generate(cls, resource_id: str, version: int = 1) -> "ResourceKey":
        """Creates a fresh random key."""
        return cls(resource_id=resource_id, version=version, key=os.urandom(RESOURCE_KEY_SIZE))


@dataclass
class WrappedKey:
    """
    A resource key encrypted for one recipient.

    The ciphertext is a conversation payload between the wrapping principal
    and the recipient, so unwrapping needs wrapped_by_public_id.

    Attributes:
        resource_id: The resource the key protects.
        recipient_public_id: Who can unwrap it.
        ciphertext: Conversation payload carrying the key.
        wrapper_version: Wrap format version.
        wrapped_by_public_id: Who wrapped it.
        wrapped_at: When it was wrapped.
        key_version: Version of the resource key inside.
        algorithm: Wrap algorithm identifier.
    """
    resource_id: str
    recipient_public_id: str
    ciphertext: str
    wrapper_version: int
    wrapped_by_public_id: str
    wrapped_at: datetime
    key_version: int = 1
    algorithm: str = WRAP_ALGORITHM

    def to_record(self) -> str:
        """The opaque blob the directory stores for this wrap."""
        return json.dumps(
            {
                "v": self.wrapper_version,
                "alg": self.algorithm,
                "key": self.ciphertext,
                "created_by": self.wrapped_by_public_id,
                "created_at": int(self.wrapped_at.timestamp()),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_record(
        cls,
        resource_id: str,
        recipient_public_id: str,
        key_version: int,
        record: str,
    ) -> "WrappedKey":
        """
        Rebuild a wrapped key from a stored blob.

        Raises:
            UnsupportedKeyFormatError: If the blob is not a known wrap format.
        """
        try:
            data = json.loads(record)
            wrapped = cls(
                resource_id=resource_id,
                recipient_public_id=recipient_public_id,
                ciphertext=str(data["key"]),
                wrapper_version=int(data["v"]),
                wrapped_by_public_id=str(data["created_by"]),
                wrapped_at=datetime.fromtimestamp(int(data["created_at"])),
                key_version=key_version,
                algorithm=str(data["alg"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise UnsupportedKeyFormatError(f"Unreadable wrapped key record: {e}") from e
        wrapped.check_format()
        return wrapped

    def check_format(self) -> None:
        """
        Raises:
            UnsupportedKeyFormatError: If version or algorithm is unknown.
        """
        if self.wrapper_version != WRAP_FORMAT_VERSION:
            raise UnsupportedKeyFormatError(
                f"Unsupported wrapped key version: {self.wrapper_version}"
            )
        if self.algorithm != WRAP_ALGORITHM:
            raise UnsupportedKeyFormatError(f"Unsupported wrap algorithm: {self.algorithm!r}")

    def to_dict(self) -> dict[str, Any]:
        """Storage record as exposed to clients."""
        return {
            "resourceId": self.resource_id,
            "recipientPublicId": self.recipient_public_id,
            "ciphertext": self.to_record(),
            "wrapperVersion": self.wrapper_version,
            "wrappedByPublicId": self.wrapped_by_public_id,
            "wrappedAt": int(self.wrapped_at.timestamp()),
            "keyVersion": self.key_version,
        }


class KeyRequestStatus(Enum):
    """Lifecycle of a key request."""
    PENDING = "pending"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


@dataclass
class KeyRequest:
    """A principal asking holders for a resource key."""
    id: str
    resource_id: str
    requester_public_id: str
    status: KeyRequestStatus
    created_at: datetime
    requester_display_name: Optional[str] = None
    target_public_id: Optional[str] = None
    fulfilled_at: Optional[datetime] = None
    fulfilled_by: Optional[str] = None

    @classmethod
    def create(
        cls,
        resource_id: str,
        requester_public_id: str,
        requester_display_name: Optional[str] = None,
        target_public_id: Optional[str] = None,
    ) -> "KeyRequest":
        """Creates a new pending request."""
        return cls(
            id=str(uuid.uuid4()),
            resource_id=resource_id,
            requester_public_id=requester_public_id,
            status=KeyRequestStatus.PENDING,
            created_at=datetime.now(),
            requester_display_name=requester_display_name,
            target_public_id=target_public_id,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == KeyRequestStatus.PENDING

    def to_public_dict(self) -> dict[str, Any]:
        """The record shape the list endpoint exposes."""
        return {
            "id": self.id,
            "resourceId": self.resource_id,
            "requesterPublicId": self.requester_public_id,
            "requesterDisplayName": self.requester_display_name,
            "status": self.status.value,
        }


class LedgerEventType(Enum):
    """Push notifications emitted by the ledger."""
    CREATED = "key_request:created"
    FULFILLED = "key_request:fulfilled"
    REJECTED = "key_request:rejected"


@dataclass
class LedgerEvent:
    """A ledger change delivered to subscribers."""
    type: LedgerEventType
    request: KeyRequest


@dataclass
class DistributionResult:
    """Outcome of one distribution pass over a resource."""
    resource_id: str
    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def write_count(self) -> int:
        return len(self.written)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class FulfillmentReport:
    """Outcome of a fulfiller pass, by request id."""
    fulfilled: list[str] = field(default_factory=list)
    already_fulfilled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def merge(self, other: "FulfillmentReport") -> None:
        self.fulfilled.extend(other.fulfilled)
        self.already_fulfilled.extend(other.already_fulfilled)
        self.skipped.extend(other.skipped)
        self.failed.update(other.failed)

    @property
    def total(self) -> int:
        return (
            len(self.fulfilled)
            + len(self.already_fulfilled)
            + len(self.skipped)
            + len(self.failed)
        )


@dataclass
class ChannelMessage:
    """An encrypted message as stored for a resource."""
    id: str
    resource_id: str
    ciphertext: str
    sender_public_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class DecryptedMessage:
    """A channel message after decryption and signature check."""
    content: str
    sender_public_id: str
    valid: bool
    key_version: int


@dataclass
class RenderedMessage:
    """
    Display form of a channel message.

    When decryption fails, content holds a labeled placeholder and error
    names the failure.
    """
    id: str
    content: str
    sender_public_id: Optional[str]
    decrypted: bool
    error: Optional[str] = None


@dataclass
class SignerConnection:
    """
    Everything needed to silently reconnect to a remote signer.

    Attributes:
        client_secret: Hex seed of the session's ephemeral identity.
        remote_signer_public_id: The signer recorded at handshake.
        relays: Relay set the pair meets on.
        user_public_id: The principal the signer acts for, once known.
    """
    client_secret: str = field(repr=False)
    remote_signer_public_id: str
    relays: list[str]
    user_public_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "client_secret": self.client_secret,
                "remote_signer_public_id": self.remote_signer_public_id,
                "relays": list(self.relays),
                "user_public_id": self.user_public_id,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "SignerConnection":
        """
        Raises:
            InvalidEnvelopeError: If the JSON is malformed.
        """
        try:
            data = json.loads(text)
            return cls(
                client_secret=str(data["client_secret"]),
                remote_signer_public_id=str(data["remote_signer_public_id"]),
                relays=[str(r) for r in data["relays"]],
                user_public_id=data.get("user_public_id"),
            )
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise InvalidEnvelopeError(f"Invalid signer connection record: {e}") from e
