"""Tests for connection descriptors."""

import pytest

from relaykeys.descriptor import BunkerPointer, ConnectionDescriptor, generate_secret
from relaykeys.keys import Identity
from relaykeys.types import InvalidDescriptorError
from .test_vectors import RELAYS


@pytest.fixture
def client_id() -> str:
    return Identity.generate().public_id


class TestConnectionDescriptor:
    """Test nostrconnect:// descriptors."""

    def test_round_trip(self, client_id) -> None:
        descriptor = ConnectionDescriptor(
            client_public_id=client_id,
            relays=RELAYS,
            secret="s3cret",
            name="My App",
            url="https://app.example",
            image="https://app.example/icon.png",
            perms=["sign_event", "nip44_encrypt"],
        )
        uri = descriptor.to_uri()

        assert uri.startswith(f"nostrconnect://{client_id}?")
        assert ConnectionDescriptor.parse(uri) == descriptor

    def test_relays_are_repeated(self, client_id) -> None:
        uri = ConnectionDescriptor(client_id, RELAYS, "s").to_uri()
        assert uri.count("relay=") == len(RELAYS)

    def test_optional_metadata_omitted(self, client_id) -> None:
        uri = ConnectionDescriptor(client_id, RELAYS[:1], "s").to_uri()
        assert "name=" not in uri
        assert "perms=" not in uri
        parsed = ConnectionDescriptor.parse(uri)
        assert parsed.name is None
        assert parsed.perms == []

    def test_wrong_scheme(self, client_id) -> None:
        with pytest.raises(InvalidDescriptorError, match="scheme"):
            ConnectionDescriptor.parse(f"bunker://{client_id}?relay=wss://a&secret=s")

    def test_missing_relay(self, client_id) -> None:
        with pytest.raises(InvalidDescriptorError, match="relay"):
            ConnectionDescriptor.parse(f"nostrconnect://{client_id}?secret=s")

    def test_missing_secret(self, client_id) -> None:
        with pytest.raises(InvalidDescriptorError, match="secret"):
            ConnectionDescriptor.parse(f"nostrconnect://{client_id}?relay=wss://a")

    def test_bad_public_id(self) -> None:
        with pytest.raises(InvalidDescriptorError):
            ConnectionDescriptor.parse("nostrconnect://abc?relay=wss://a&secret=s")


class TestBunkerPointer:
    """Test bunker:// pointers."""

    def test_round_trip(self, client_id) -> None:
        pointer = BunkerPointer(signer_public_id=client_id, relays=RELAYS, secret="abc")
        assert BunkerPointer.parse(pointer.to_uri()) == pointer

    def test_secret_is_optional(self, client_id) -> None:
        pointer = BunkerPointer.parse(f"bunker://{client_id}?relay=wss://a")
        assert pointer.secret is None
        assert pointer.relays == ["wss://a"]


class TestSecrets:
    def test_secrets_are_random(self) -> None:
        assert generate_secret() != generate_secret()
        assert len(generate_secret()) == 32
