"""
Relay events and subscription filters.

An event is addressed by tags and carries opaque content. Its id is the
SHA-256 of the canonical serialization

    [0, pubkey, created_at, kind, tags, content]

and its signature is an Ed25519 signature over the 32 id bytes.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .keys import Identity, SecretHandle, verify_signature
from .types import InvalidEnvelopeError


@dataclass
class EventTemplate:
    """An unsigned event: what a signer is asked to sign."""
    kind: int
    content: str
    tags: list[list[str]] = field(default_factory=list)
    created_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind,
            "content": self.content,
            "tags": [list(tag) for tag in self.tags],
        }
        if self.created_at is not None:
            result["created_at"] = self.created_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventTemplate":
        try:
            return cls(
                kind=int(data["kind"]),
                content=str(data.get("content", "")),
                tags=[[str(v) for v in tag] for tag in data.get("tags", [])],
                created_at=int(data["created_at"]) if data.get("created_at") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidEnvelopeError(f"Invalid event template: {e}") from e


@dataclass
class Event:
    """A signed relay event."""
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str

    def tag_values(self, name: str) -> list[str]:
        """Values of all tags with the given name."""
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    @property
    def recipients(self) -> list[str]:
        """Public ids this event is addressed to (p tags)."""
        return self.tag_values("p")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """
        Build an event from its wire form.

        Raises:
            InvalidEnvelopeError: If a field is missing or has the wrong type.
        """
        try:
            return cls(
                id=str(data["id"]),
                pubkey=str(data["pubkey"]),
                created_at=int(data["created_at"]),
                kind=int(data["kind"]),
                tags=[[str(v) for v in tag] for tag in data["tags"]],
                content=str(data["content"]),
                sig=str(data["sig"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidEnvelopeError(f"Invalid event: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "Event":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidEnvelopeError(f"Event is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidEnvelopeError("Event must be a JSON object")
        return cls.from_dict(data)


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: list[list[str]],
    content: str,
) -> str:
    """SHA-256 of the canonical event serialization, as hex."""
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_template(template: EventTemplate, secret: SecretHandle) -> Event:
    """Sign a template with a secret handle."""
    created_at = template.created_at if template.created_at is not None else int(time.time())
    tags = [list(tag) for tag in template.tags]
    event_id = compute_event_id(secret.public_id, created_at, template.kind, tags, template.content)
    signature = secret.sign(bytes.fromhex(event_id))
    return Event(
        id=event_id,
        pubkey=secret.public_id,
        created_at=created_at,
        kind=template.kind,
        tags=tags,
        content=template.content,
        sig=signature.hex(),
    )


def finalize_event(template: EventTemplate, identity: Identity) -> Event:
    """
    Sign a template as the given identity.

    Raises:
        ValueError: If the identity holds no secret.
    """
    if identity.secret is None:
        raise ValueError("Cannot sign an event without a secret")
    return sign_template(template, identity.secret)


def verify_event(event: Event) -> bool:
    """Check an event's id and signature. Never raises."""
    try:
        expected_id = compute_event_id(
            event.pubkey, event.created_at, event.kind, event.tags, event.content
        )
        if expected_id != event.id:
            return False
        return verify_signature(event.pubkey, bytes.fromhex(event.id), bytes.fromhex(event.sig))
    except (TypeError, ValueError):
        return False


@dataclass
class Filter:
    """
    Subscription filter. Unset fields match everything; set fields must all
    match for an event to pass.
    """
    kinds: Optional[list[int]] = None
    authors: Optional[list[str]] = None
    p_tags: Optional[list[str]] = None
    since: Optional[int] = None

    def matches(self, event: Event) -> bool:
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.p_tags is not None and not set(self.p_tags) & set(event.recipients):
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        return True
