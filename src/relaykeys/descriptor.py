"""
Connection descriptors for pairing with a remote signer.

Client initiated (shown to the user as text or a scannable code):

    nostrconnect://<client_public_id>?relay=wss://a&relay=wss://b&secret=...
        &name=...&url=...&image=...&perms=sign_event,nip44_encrypt

Signer initiated (pasted in by the user):

    bunker://<signer_public_id>?relay=wss://a&secret=...
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

from .keys import validate_public_id
from .types import (
    BUNKER_SCHEME,
    NOSTRCONNECT_SCHEME,
    InvalidDescriptorError,
    InvalidPublicKeyError,
)

SECRET_SIZE = 16


def generate_secret() -> str:
    """A random single-use pairing secret."""
    return os.urandom(SECRET_SIZE).hex()


@dataclass
class ConnectionDescriptor:
    """
    The only artifact surfaced to the user for out-of-band pairing.

    Attributes:
        client_public_id: The session's ephemeral public id.
        relays: Relay addresses both sides meet on (at least one).
        secret: Single-use secret the signer echoes back.
        name: Caller display name.
        url: Caller origin.
        image: Caller icon.
        perms: Requested permissions.
    """
    client_public_id: str
    relays: list[str]
    secret: str
    name: Optional[str] = None
    url: Optional[str] = None
    image: Optional[str] = None
    perms: list[str] = field(default_factory=list)

    def to_uri(self) -> str:
        params: list[tuple[str, str]] = [("relay", relay) for relay in self.relays]
        params.append(("secret", self.secret))
        for key in ("name", "url", "image"):
            value = getattr(self, key)
            if value is not None:
                params.append((key, value))
        if self.perms:
            params.append(("perms", ",".join(self.perms)))

        return f"{NOSTRCONNECT_SCHEME}://{self.client_public_id}?{urlencode(params)}"

    @classmethod
    def parse(cls, uri: str) -> "ConnectionDescriptor":
        """
        Parse a nostrconnect:// descriptor.

        Raises:
            InvalidDescriptorError: If the URI is malformed.
        """
        public_id, params = _parse(uri, NOSTRCONNECT_SCHEME)

        secret = _single(params, "secret")
        if not secret:
            raise InvalidDescriptorError("Missing secret parameter")

        perms = _single(params, "perms")
        return cls(
            client_public_id=public_id,
            relays=_relays(params),
            secret=secret,
            name=_single(params, "name"),
            url=_single(params, "url"),
            image=_single(params, "image"),
            perms=[p for p in perms.split(",") if p] if perms else [],
        )


@dataclass
class BunkerPointer:
    """Signer-initiated pairing pointer."""
    signer_public_id: str
    relays: list[str]
    secret: Optional[str] = None

    def to_uri(self) -> str:
        params: list[tuple[str, str]] = [("relay", relay) for relay in self.relays]
        if self.secret is not None:
            params.append(("secret", self.secret))
        return f"{BUNKER_SCHEME}://{self.signer_public_id}?{urlencode(params)}"

    @classmethod
    def parse(cls, uri: str) -> "BunkerPointer":
        """
        Parse a bunker:// pointer.

        Raises:
            InvalidDescriptorError: If the URI is malformed.
        """
        public_id, params = _parse(uri, BUNKER_SCHEME)
        return cls(
            signer_public_id=public_id,
            relays=_relays(params),
            secret=_single(params, "secret"),
        )


def _parse(uri: str, scheme: str) -> tuple[str, dict[str, list[str]]]:
    parsed = urlparse(uri.strip())

    if parsed.scheme != scheme:
        raise InvalidDescriptorError(f"Invalid scheme: {parsed.scheme!r} (expected {scheme!r})")

    public_id = parsed.netloc.lower()
    try:
        validate_public_id(public_id)
    except InvalidPublicKeyError as e:
        raise InvalidDescriptorError(f"Invalid public id in descriptor: {e}") from e

    return public_id, parse_qs(parsed.query)


def _relays(params: dict[str, list[str]]) -> list[str]:
    relays = list(dict.fromkeys(r for r in params.get("relay", []) if r))
    if not relays:
        raise InvalidDescriptorError("Missing relay parameter")
    return relays


def _single(params: dict[str, list[str]], key: str) -> Optional[str]:
    values = params.get(key)
    return values[0] if values else None
