"""Tests for directories, connection storage and the resource key cache."""

import os
import stat
from datetime import datetime, timedelta

import pytest

from relaykeys.keys import Identity
from relaykeys.models import KeyRequest, KeyRequestStatus, ResourceKey, SignerConnection, WrappedKey
from relaykeys.storage import (
    FileConnectionStorage,
    InMemoryConnectionStorage,
    InMemoryKeyDirectory,
    ResourceKeyCache,
    SQLiteKeyDirectory,
)
from relaykeys.types import InvalidEnvelopeError, PasswordRequiredError, StorageError
from .test_vectors import RELAYS


def make_wrap(resource_id: str, recipient: str, version: int = 1, ciphertext: str = "payload") -> WrappedKey:
    return WrappedKey(
        resource_id=resource_id,
        recipient_public_id=recipient,
        ciphertext=ciphertext,
        wrapper_version=1,
        wrapped_by_public_id="wrapper",
        wrapped_at=datetime(2024, 1, 1, 12, 0, 0),
        key_version=version,
    )


@pytest.fixture
def connection() -> SignerConnection:
    return SignerConnection(
        client_secret=Identity.generate().secret.to_hex(),
        remote_signer_public_id=Identity.generate().public_id,
        relays=list(RELAYS),
        user_public_id=Identity.generate().public_id,
    )


@pytest.fixture(params=["memory", "sqlite"])
def directory(request):
    if request.param == "memory":
        yield InMemoryKeyDirectory()
    else:
        directory = SQLiteKeyDirectory()
        yield directory
        directory.close()


class TestKeyDirectory:
    """Contract tests run against every KeyDirectory."""

    @pytest.mark.asyncio
    async def test_membership(self, directory) -> None:
        await directory.authorize("r", "a", display_name="Alice")
        await directory.authorize("r", "b")
        await directory.authorize("r", "a")

        assert await directory.authorized("r") == ["a", "b"]
        assert await directory.is_authorized("r", "a") is True
        assert await directory.display_name("a") == "Alice"
        assert await directory.display_name("b") is None

        await directory.revoke("r", "a")
        assert await directory.authorized("r") == ["b"]

    @pytest.mark.asyncio
    async def test_version_compare_and_swap(self, directory) -> None:
        assert await directory.current_version("r") == 0
        assert await directory.advance_version("r", 0) is True
        assert await directory.advance_version("r", 0) is False
        assert await directory.advance_version("r", 1) is True
        assert await directory.current_version("r") == 2

    @pytest.mark.asyncio
    async def test_encrypted_flag(self, directory) -> None:
        await directory.advance_version("a", 0)
        await directory.mark_encrypted("a")
        await directory.mark_encrypted("b")
        await directory.mark_encrypted("a")
        assert await directory.encrypted_resources() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_wrapped_key_insert_if_absent(self, directory) -> None:
        assert await directory.put_wrapped_key(make_wrap("r", "a", ciphertext="first")) is True
        assert await directory.put_wrapped_key(make_wrap("r", "a", ciphertext="second")) is False

        stored = await directory.get_wrapped_key("r", "a", 1)
        assert stored.ciphertext == "first"
        assert directory.write_count == 1

    @pytest.mark.asyncio
    async def test_wrapped_key_replace(self, directory) -> None:
        await directory.put_wrapped_key(make_wrap("r", "a", ciphertext="first"))
        assert await directory.put_wrapped_key(make_wrap("r", "a", ciphertext="second"), replace=True) is True
        assert (await directory.get_wrapped_key("r", "a", 1)).ciphertext == "second"

    @pytest.mark.asyncio
    async def test_wrapped_key_versions(self, directory) -> None:
        await directory.put_wrapped_key(make_wrap("r", "a", 1))
        await directory.put_wrapped_key(make_wrap("r", "a", 2))
        await directory.put_wrapped_key(make_wrap("r", "b", 2))

        assert (await directory.get_wrapped_key("r", "a")).key_version == 2
        assert (await directory.get_wrapped_key("r", "a", 1)).key_version == 1
        assert await directory.get_wrapped_key("r", "a", 3) is None
        assert await directory.get_wrapped_key("r", "c") is None
        assert await directory.recipients_with_key("r", 2) == {"a", "b"}
        assert await directory.recipients_with_key("r", 1) == {"a"}
        assert len(await directory.wrapped_keys("r")) == 3
        assert len(await directory.wrapped_keys("r", 2)) == 2

    @pytest.mark.asyncio
    async def test_stored_wrap_keeps_fields(self, directory) -> None:
        original = make_wrap("r", "a", 4)
        await directory.put_wrapped_key(original)
        stored = await directory.get_wrapped_key("r", "a", 4)

        assert stored.wrapped_by_public_id == original.wrapped_by_public_id
        assert stored.wrapped_at == original.wrapped_at
        assert stored.wrapper_version == original.wrapper_version
        assert stored.algorithm == original.algorithm

    @pytest.mark.asyncio
    async def test_invite_keys(self, directory) -> None:
        assert await directory.put_invite_key("h1", make_wrap("r", "invitee", 3, ciphertext="first")) is True
        assert await directory.put_invite_key("h1", make_wrap("r", "invitee", 3, ciphertext="second")) is False

        stored = await directory.get_invite_key("h1")
        assert stored.ciphertext == "first"
        assert stored.resource_id == "r"
        assert stored.recipient_public_id == "invitee"
        assert stored.key_version == 3
        assert await directory.get_invite_key("h2") is None

        assert await directory.wrapped_keys("r") == []
        assert directory.write_count == 0

        assert await directory.delete_invite_key("h1") is True
        assert await directory.delete_invite_key("h1") is False
        assert await directory.get_invite_key("h1") is None

    @pytest.mark.asyncio
    async def test_key_request_unique_per_requester(self, directory) -> None:
        first, created = await directory.add_key_request(KeyRequest.create("r", "a"))
        second, created_again = await directory.add_key_request(KeyRequest.create("r", "a"))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert len(await directory.list_key_requests()) == 1

    @pytest.mark.asyncio
    async def test_key_request_transitions_once(self, directory) -> None:
        request, _ = await directory.add_key_request(KeyRequest.create("r", "a"))

        assert await directory.transition_key_request(
            request.id, KeyRequestStatus.PENDING, KeyRequestStatus.FULFILLED, by="holder"
        ) is True
        assert await directory.transition_key_request(
            request.id, KeyRequestStatus.PENDING, KeyRequestStatus.FULFILLED, by="other"
        ) is False
        assert await directory.transition_key_request(
            "missing", KeyRequestStatus.PENDING, KeyRequestStatus.FULFILLED
        ) is False

        stored = await directory.get_key_request(request.id)
        assert stored.status == KeyRequestStatus.FULFILLED
        assert stored.fulfilled_by == "holder"

    @pytest.mark.asyncio
    async def test_key_request_reopen(self, directory) -> None:
        request, _ = await directory.add_key_request(KeyRequest.create("r", "a"))
        await directory.transition_key_request(request.id, KeyRequestStatus.PENDING, KeyRequestStatus.REJECTED)

        kept, created = await directory.add_key_request(KeyRequest.create("r", "a"))
        assert created is False
        assert kept.status == KeyRequestStatus.REJECTED

        reopened, created = await directory.add_key_request(KeyRequest.create("r", "a"), reopen=True)
        assert created is True
        assert reopened.id == request.id
        assert reopened.is_pending

    @pytest.mark.asyncio
    async def test_list_key_requests(self, directory) -> None:
        a, _ = await directory.add_key_request(KeyRequest.create("r1", "a"))
        b, _ = await directory.add_key_request(KeyRequest.create("r2", "a"))
        c, _ = await directory.add_key_request(KeyRequest.create("r1", "b"))
        await directory.transition_key_request(c.id, KeyRequestStatus.PENDING, KeyRequestStatus.REJECTED)

        assert [r.id for r in await directory.list_key_requests()] == [a.id, b.id, c.id]
        assert [r.id for r in await directory.list_key_requests(resource_id="r1")] == [a.id, c.id]
        assert [r.id for r in await directory.list_key_requests(status=KeyRequestStatus.PENDING)] == [a.id, b.id]
        assert [r.id for r in await directory.list_key_requests(requester_public_id="b")] == [c.id]

    @pytest.mark.asyncio
    async def test_returned_requests_are_copies(self, directory) -> None:
        request, _ = await directory.add_key_request(KeyRequest.create("r", "a"))
        request.status = KeyRequestStatus.FULFILLED
        assert (await directory.get_key_request(request.id)).is_pending


class TestSQLiteFile:
    """Test the SQLite directory on disk."""

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, tmp_path) -> None:
        path = str(tmp_path / "keys" / "directory.db")
        first = SQLiteKeyDirectory(path)
        await first.authorize("r", "a")
        await first.advance_version("r", 0)
        await first.put_wrapped_key(make_wrap("r", "a"))
        first.close()

        second = SQLiteKeyDirectory(path)
        try:
            assert await second.authorized("r") == ["a"]
            assert await second.current_version("r") == 1
            assert await second.get_wrapped_key("r", "a", 1) is not None
        finally:
            second.close()


class TestInMemoryConnectionStorage:
    """Test in-memory connection storage."""

    @pytest.mark.asyncio
    async def test_save_load_delete(self, connection) -> None:
        storage = InMemoryConnectionStorage()
        await storage.save("main", connection)

        assert await storage.load("main") == connection
        assert await storage.load("other") is None
        assert await storage.list_names() == ["main"]

        await storage.delete("main")
        assert await storage.load("main") is None


class TestFileConnectionStorage:
    """Test password-protected connection files."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path, connection) -> None:
        storage = FileConnectionStorage(password="correct horse", directory=tmp_path)
        await storage.save("main", connection)

        loaded = await FileConnectionStorage(password="correct horse", directory=tmp_path).load("main")

        assert loaded == connection
        assert await storage.list_names() == ["main"]

    @pytest.mark.asyncio
    async def test_secret_not_stored_in_clear(self, tmp_path, connection) -> None:
        storage = FileConnectionStorage(password="pw", directory=tmp_path)
        await storage.save("main", connection)

        data = (tmp_path / "main.conn").read_bytes()
        assert connection.client_secret.encode() not in data

    @pytest.mark.asyncio
    async def test_file_permissions(self, tmp_path, connection) -> None:
        if os.name != "posix":
            pytest.skip("POSIX permissions only")
        storage = FileConnectionStorage(password="pw", directory=tmp_path)
        await storage.save("main", connection)

        mode = stat.S_IMODE((tmp_path / "main.conn").stat().st_mode)
        assert mode == 0o600

    @pytest.mark.asyncio
    async def test_wrong_password(self, tmp_path, connection) -> None:
        await FileConnectionStorage(password="right", directory=tmp_path).save("main", connection)

        with pytest.raises(StorageError, match="incorrect password"):
            await FileConnectionStorage(password="wrong", directory=tmp_path).load("main")

    @pytest.mark.asyncio
    async def test_truncated_file(self, tmp_path) -> None:
        (tmp_path / "main.conn").write_bytes(b"short")
        with pytest.raises(StorageError):
            await FileConnectionStorage(password="pw", directory=tmp_path).load("main")

    @pytest.mark.asyncio
    async def test_password_required(self, tmp_path, connection) -> None:
        storage = FileConnectionStorage(directory=tmp_path)
        with pytest.raises(PasswordRequiredError):
            await storage.save("main", connection)

        storage.set_password("pw")
        await storage.save("main", connection)
        storage.clear_password()
        with pytest.raises(PasswordRequiredError):
            await storage.load("main")

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, tmp_path, connection) -> None:
        storage = FileConnectionStorage(password="pw", directory=tmp_path)
        assert await storage.load("absent") is None

        await storage.save("main", connection)
        await storage.delete("main")
        await storage.delete("main")
        assert await storage.list_names() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["../escape", "a/b", "", "x" * 200])
    async def test_invalid_names(self, tmp_path, connection, name) -> None:
        storage = FileConnectionStorage(password="pw", directory=tmp_path)
        with pytest.raises(StorageError):
            await storage.save(name, connection)

    @pytest.mark.asyncio
    async def test_default_directory_under_home(self, tmp_path, monkeypatch, connection) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        storage = FileConnectionStorage(password="pw")
        await storage.save("main", connection)

        assert (tmp_path / ".relaykeys" / "connections" / "main.conn").exists()

    def test_connection_json(self, connection) -> None:
        assert SignerConnection.from_json(connection.to_json()) == connection
        assert connection.client_secret not in repr(connection)
        with pytest.raises(InvalidEnvelopeError):
            SignerConnection.from_json("{}")


class TestResourceKeyCache:
    """Test the resource key cache."""

    def test_store_and_retrieve(self) -> None:
        cache = ResourceKeyCache()
        key = ResourceKey.generate("r", 1)
        cache.store(key)

        assert cache.retrieve("r", 1) is key
        assert cache.retrieve("r", 2) is None
        assert len(cache) == 1

    def test_expired_entry_is_a_miss(self) -> None:
        cache = ResourceKeyCache(ttl=timedelta(seconds=-1))
        cache.store(ResourceKey.generate("r", 1))

        assert cache.retrieve("r", 1) is None
        assert len(cache) == 0

    def test_latest(self) -> None:
        cache = ResourceKeyCache()
        cache.store(ResourceKey.generate("r", 1))
        newest = ResourceKey.generate("r", 3)
        cache.store(newest)
        cache.store(ResourceKey.generate("other", 9))

        assert cache.latest("r") is newest
        assert cache.latest("missing") is None

    def test_invalidate(self) -> None:
        cache = ResourceKeyCache()
        for version in (1, 2):
            cache.store(ResourceKey.generate("r", version))
        cache.store(ResourceKey.generate("s", 1))

        cache.invalidate("r", 1)
        assert cache.retrieve("r", 1) is None
        assert cache.retrieve("r", 2) is not None

        cache.invalidate("r")
        assert cache.retrieve("r", 2) is None
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_prune_expired(self) -> None:
        cache = ResourceKeyCache(ttl=timedelta(0))
        cache.store(ResourceKey.generate("r", 1))
        cache.prune_expired()
        assert len(cache) == 0

    def test_key_not_in_repr(self) -> None:
        key = ResourceKey.generate("r", 1)
        assert key.key.hex() not in repr(key)
