"""Tests for the key request fulfiller."""

import asyncio
import base64

import pytest

from relaykeys.channel_keys import ChannelKeyManager
from relaykeys.fulfiller import FulfillerConfig, KeyRequestFulfiller
from relaykeys.keys import Identity
from relaykeys.ledger import KeyRequestLedger
from relaykeys.models import KeyRequestStatus
from relaykeys.signer import LocalSigner
from relaykeys.storage import InMemoryKeyDirectory
from .test_vectors import ALICE_SEED_HEX, BOB_SEED_HEX, CAROL_SEED_HEX

ROOM = "general"


@pytest.fixture
def alice() -> Identity:
    return Identity.from_secret_hex(ALICE_SEED_HEX)


@pytest.fixture
def bob() -> Identity:
    return Identity.from_secret_hex(BOB_SEED_HEX)


@pytest.fixture
def carol() -> Identity:
    return Identity.from_secret_hex(CAROL_SEED_HEX)


@pytest.fixture
def directory() -> InMemoryKeyDirectory:
    return InMemoryKeyDirectory()


@pytest.fixture
def ledger(directory) -> KeyRequestLedger:
    return KeyRequestLedger(directory)


def fulfiller_for(identity: Identity, directory, ledger) -> KeyRequestFulfiller:
    manager = ChannelKeyManager(LocalSigner(identity), directory)
    return KeyRequestFulfiller(manager, ledger, FulfillerConfig.fast())


async def setup_room(directory, creator: Identity, *members: Identity) -> ChannelKeyManager:
    await directory.authorize(ROOM, creator.public_id)
    for member in members:
        await directory.authorize(ROOM, member.public_id)
    manager = ChannelKeyManager(LocalSigner(creator), directory)
    await manager.setup(ROOM, members=[m.public_id for m in members])
    return manager


class TestFulfill:
    """Test fulfilling single requests."""

    @pytest.mark.asyncio
    async def test_fulfills_pending_request(self, directory, ledger, alice, carol) -> None:
        await setup_room(directory, alice)
        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)

        report = await fulfiller_for(alice, directory, ledger).fulfill(request)

        assert report.fulfilled == [request.id]
        assert (await ledger.get(request.id)).status == KeyRequestStatus.FULFILLED
        await ChannelKeyManager(LocalSigner(carol), directory).fetch(ROOM)

    @pytest.mark.asyncio
    async def test_skips_request_targeted_elsewhere(self, directory, ledger, alice, bob, carol) -> None:
        await setup_room(directory, alice, bob)
        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id, target_public_id=bob.public_id)

        report = await fulfiller_for(alice, directory, ledger).fulfill(request)

        assert report.skipped == [request.id]
        assert (await ledger.get(request.id)).is_pending

    @pytest.mark.asyncio
    async def test_skips_without_key(self, directory, ledger, alice, bob, carol) -> None:
        await setup_room(directory, alice)
        await directory.authorize(ROOM, bob.public_id)
        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)

        report = await fulfiller_for(bob, directory, ledger).fulfill(request)

        assert report.skipped == [request.id]
        assert (await ledger.get(request.id)).is_pending

    @pytest.mark.asyncio
    async def test_second_holder_sees_already_fulfilled(self, directory, ledger, alice, bob, carol) -> None:
        await setup_room(directory, alice, bob)
        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)

        first = await fulfiller_for(alice, directory, ledger).fulfill(request)
        second = await fulfiller_for(bob, directory, ledger).fulfill(request)

        assert first.fulfilled == [request.id]
        assert second.already_fulfilled == [request.id]

    @pytest.mark.asyncio
    async def test_uses_current_version_after_rotation(self, directory, ledger, alice, carol) -> None:
        """A request raised before a rotation is answered with the new key."""
        manager = await setup_room(directory, alice)
        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)

        await directory.revoke(ROOM, carol.public_id)
        rotated = await manager.rotate(ROOM)
        await directory.authorize(ROOM, carol.public_id)

        report = await fulfiller_for(alice, directory, ledger).fulfill(request)

        assert report.fulfilled == [request.id]
        carol_key = await ChannelKeyManager(LocalSigner(carol), directory).fetch(ROOM)
        assert carol_key.version == 2
        assert carol_key.key == rotated.key


class TestPushAndPull:
    """Test the push subscription and the polling loop."""

    @pytest.mark.asyncio
    async def test_push(self, directory, ledger, alice, carol) -> None:
        await setup_room(directory, alice)
        fulfiller = fulfiller_for(alice, directory, ledger)
        fulfiller.attach()
        fulfiller.attach()

        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)
        await fulfiller.drain()

        assert (await ledger.get(request.id)).status == KeyRequestStatus.FULFILLED
        assert fulfiller.report.fulfilled == [request.id]

    @pytest.mark.asyncio
    async def test_new_member_gets_key_without_server_seeing_it(self, directory, ledger, alice, carol) -> None:
        """Carol is authorized but unwrapped; an online holder answers her request."""
        manager = await setup_room(directory, alice)
        key = await manager.fetch(ROOM)
        fulfiller = fulfiller_for(alice, directory, ledger)
        fulfiller.attach()

        await directory.authorize(ROOM, carol.public_id)
        assert await directory.get_wrapped_key(ROOM, carol.public_id) is None
        await ledger.request(ROOM, carol.public_id)
        await fulfiller.drain()

        carol_key = await ChannelKeyManager(LocalSigner(carol), directory).fetch(ROOM)
        assert carol_key.key == key.key

        plaintext_forms = (key.key.hex(), base64.b64encode(key.key).decode())
        for wrapped in await directory.wrapped_keys(ROOM):
            record = wrapped.to_record()
            assert not any(form in record for form in plaintext_forms)

    @pytest.mark.asyncio
    async def test_detach_stops_push(self, directory, ledger, alice, carol) -> None:
        await setup_room(directory, alice)
        fulfiller = fulfiller_for(alice, directory, ledger)
        fulfiller.attach()
        fulfiller.detach()

        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)
        await fulfiller.drain()

        assert (await ledger.get(request.id)).is_pending

    @pytest.mark.asyncio
    async def test_poll_catches_up(self, directory, ledger, alice, bob, carol) -> None:
        """Requests raised while the holder was offline are fulfilled on the next poll."""
        await setup_room(directory, alice)
        await directory.authorize(ROOM, bob.public_id)
        await directory.authorize(ROOM, carol.public_id)
        requests = [
            await ledger.request(ROOM, bob.public_id),
            await ledger.request(ROOM, carol.public_id),
        ]

        report = await fulfiller_for(alice, directory, ledger).poll_once()

        assert sorted(report.fulfilled) == sorted(r.id for r in requests)
        assert await ledger.list_pending() == []

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, directory, ledger, alice, carol) -> None:
        await setup_room(directory, alice)
        fulfiller = fulfiller_for(alice, directory, ledger)
        task = asyncio.create_task(fulfiller.run())

        await directory.authorize(ROOM, carol.public_id)
        request = await ledger.request(ROOM, carol.public_id)
        for _ in range(100):
            if not (await ledger.get(request.id)).is_pending:
                break
            await asyncio.sleep(0.01)

        await fulfiller.stop()
        await asyncio.wait_for(task, 1.0)

        assert (await ledger.get(request.id)).status == KeyRequestStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_run_survives_poll_errors(self, directory, ledger, alice, monkeypatch) -> None:
        fulfiller = fulfiller_for(alice, directory, ledger)
        calls = []

        async def failing_poll():
            calls.append(1)
            raise RuntimeError("directory unavailable")

        monkeypatch.setattr(fulfiller, "poll_once", failing_poll)
        task = asyncio.create_task(fulfiller.run())
        await asyncio.sleep(0.1)
        await fulfiller.stop()
        await asyncio.wait_for(task, 1.0)

        assert len(calls) >= 2
