"""Tests for identities and key material."""

import pytest

from relaykeys.keys import (
    Identity,
    SecretHandle,
    agreement_public_key,
    fingerprint,
    validate_public_id,
    verify_signature,
)
from relaykeys.types import InvalidPublicKeyError
from .test_vectors import (
    ALICE_SEED_HEX,
    BOB_SEED_HEX,
    RFC8032_PUBLIC_HEX,
    RFC8032_SEED_HEX,
    RFC8032_SIGNATURE_HEX,
)


class TestIdentity:
    """Test identity creation."""

    def test_rfc8032_public_id(self) -> None:
        """The public id is the Ed25519 public key of the seed."""
        identity = Identity.from_seed(bytes.fromhex(RFC8032_SEED_HEX))
        assert identity.public_id == RFC8032_PUBLIC_HEX

    def test_deterministic(self) -> None:
        """Same seed always yields the same public id."""
        a = Identity.from_secret_hex(ALICE_SEED_HEX)
        b = Identity.from_secret_hex(ALICE_SEED_HEX)
        assert a.public_id == b.public_id
        assert a == b

    def test_distinct_seeds(self) -> None:
        alice = Identity.from_secret_hex(ALICE_SEED_HEX)
        bob = Identity.from_secret_hex(BOB_SEED_HEX)
        assert alice.public_id != bob.public_id

    def test_invalid_seed_length(self) -> None:
        """Reject seeds that are not 32 bytes."""
        with pytest.raises(ValueError, match="32 bytes"):
            Identity.from_seed(b"too short")

    def test_public_identity_has_no_secret(self) -> None:
        alice = Identity.generate()
        public = Identity.public(alice.public_id)
        assert public.has_secret is False
        assert public == alice

    def test_secret_not_in_repr(self) -> None:
        """The seed never shows up in repr()."""
        identity = Identity.from_secret_hex(ALICE_SEED_HEX)
        assert ALICE_SEED_HEX not in repr(identity)
        assert ALICE_SEED_HEX not in repr(identity.secret)

    def test_secret_hex_round_trip(self) -> None:
        handle = SecretHandle.generate()
        restored = SecretHandle.from_hex(handle.to_hex())
        assert restored.public_id == handle.public_id


class TestPublicIds:
    """Test public id validation and conversion."""

    @pytest.mark.parametrize(
        "bad",
        ["", "abc", "zz" * 32, "00" * 31, "00" * 33],
    )
    def test_invalid_public_ids(self, bad: str) -> None:
        with pytest.raises(InvalidPublicKeyError):
            validate_public_id(bad)

    def test_agreement_key_matches_secret(self) -> None:
        """Converting a public id yields the X25519 key behind the same seed."""
        handle = SecretHandle.from_hex(ALICE_SEED_HEX)
        expected = handle._agreement_key.public_key().public_bytes_raw()
        assert agreement_public_key(handle.public_id).public_bytes_raw() == expected

    def test_exchange_is_symmetric(self) -> None:
        alice = SecretHandle.from_hex(ALICE_SEED_HEX)
        bob = SecretHandle.from_hex(BOB_SEED_HEX)
        assert alice.exchange(bob.public_id) == bob.exchange(alice.public_id)

    def test_exchange_rejects_malformed_id(self) -> None:
        alice = SecretHandle.from_hex(ALICE_SEED_HEX)
        with pytest.raises(InvalidPublicKeyError):
            alice.exchange("not-a-key")


class TestSignatures:
    """Test signing and verification."""

    def test_rfc8032_signature(self) -> None:
        """Signing the empty message matches RFC 8032."""
        handle = SecretHandle(bytes.fromhex(RFC8032_SEED_HEX))
        assert handle.sign(b"").hex() == RFC8032_SIGNATURE_HEX

    def test_sign_and_verify(self) -> None:
        identity = Identity.generate()
        signature = identity.secret.sign(b"payload")
        assert verify_signature(identity.public_id, b"payload", signature) is True

    def test_verify_wrong_data(self) -> None:
        identity = Identity.generate()
        signature = identity.secret.sign(b"payload")
        assert verify_signature(identity.public_id, b"other", signature) is False

    def test_verify_wrong_key(self) -> None:
        signature = Identity.generate().secret.sign(b"payload")
        assert verify_signature(Identity.generate().public_id, b"payload", signature) is False

    def test_verify_malformed_inputs(self) -> None:
        """Malformed ids and signatures verify as False, never raise."""
        assert verify_signature("xyz", b"payload", b"\x00" * 64) is False
        assert verify_signature(RFC8032_PUBLIC_HEX, b"", b"short") is False


class TestFingerprint:
    """Test fingerprint generation."""

    def test_format(self) -> None:
        fp = fingerprint(RFC8032_PUBLIC_HEX)
        groups = fp.split(" ")
        assert len(groups) == 4
        assert all(len(g) == 4 for g in groups)
        assert fp == fp.upper()

    def test_deterministic(self) -> None:
        assert fingerprint(RFC8032_PUBLIC_HEX) == fingerprint(RFC8032_PUBLIC_HEX)
