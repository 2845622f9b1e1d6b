"""
Key request ledger.

A principal that is authorized for a resource but holds no wrap of its
current key appends a request. Any online holder can fulfill it by storing
a wrap for the requester; the request then moves pending -> fulfilled in a
single guarded transition. Holders learn about requests by subscribing
(push) or by listing pending requests (pull).
"""

import logging
from typing import Callable, Optional

from .keys import short_id
from .models import KeyRequest, KeyRequestStatus, LedgerEvent, LedgerEventType, WrappedKey
from .storage.key_directory import KeyDirectory
from .types import LedgerError

logger = logging.getLogger("relaykeys.ledger")

LedgerListener = Callable[[LedgerEvent], None]


class KeyRequestLedger:
    """Append-only record of key requests, backed by a KeyDirectory."""

    def __init__(self, directory: KeyDirectory) -> None:
        self.directory = directory
        self._listeners: list[LedgerListener] = []

    # MARK: - Push notifications

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        """
        Register a listener for ledger events.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: LedgerEventType, request: KeyRequest) -> None:
        event = LedgerEvent(type=event_type, request=request)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Ledger listener failed on %s", event_type.value)

    # MARK: - Requests

    async def request(
        self,
        resource_id: str,
        requester_public_id: str,
        display_name: Optional[str] = None,
        target_public_id: Optional[str] = None,
    ) -> KeyRequest:
        """
        Append a request, or return the one already on record.

        Re-appending while a request is pending is a no-op. A fulfilled or
        rejected request goes back to pending only if the requester still
        lacks a wrap of the current key.

        Raises:
            LedgerError: If the requester is not authorized for the resource.
        """
        if not await self.directory.is_authorized(resource_id, requester_public_id):
            raise LedgerError(
                f"{short_id(requester_public_id)} is not authorized for {resource_id}"
            )

        version = await self.directory.current_version(resource_id)
        lacks_key = (
            await self.directory.get_wrapped_key(resource_id, requester_public_id, version)
            is None
        )
        if display_name is None:
            display_name = await self.directory.display_name(requester_public_id)

        stored, created = await self.directory.add_key_request(
            KeyRequest.create(
                resource_id=resource_id,
                requester_public_id=requester_public_id,
                requester_display_name=display_name,
                target_public_id=target_public_id,
            ),
            reopen=lacks_key,
        )
        if created:
            logger.info(
                "Key request %s for %s from %s",
                stored.id[:8], resource_id, short_id(requester_public_id),
            )
            self._emit(LedgerEventType.CREATED, stored)
        return stored

    async def list_pending(
        self,
        target_public_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> list[KeyRequest]:
        """
        Pending requests, oldest first.

        With a target, only requests addressed to that holder or to nobody
        in particular are returned.
        """
        pending = await self.directory.list_key_requests(
            resource_id=resource_id, status=KeyRequestStatus.PENDING
        )
        if target_public_id is None:
            return pending
        return [
            r for r in pending
            if r.target_public_id is None or r.target_public_id == target_public_id
        ]

    async def list_for_requester(self, requester_public_id: str) -> list[KeyRequest]:
        return await self.directory.list_key_requests(requester_public_id=requester_public_id)

    async def get(self, request_id: str) -> Optional[KeyRequest]:
        return await self.directory.get_key_request(request_id)

    async def fulfill(self, request_id: str, wrapped: WrappedKey, fulfilled_by: str) -> bool:
        """
        Store a wrap for the requester and mark the request fulfilled.

        Safe to race: the wrap is insert-if-absent and the status change
        happens once, so concurrent holders converge on one wrap and one
        transition.

        Returns:
            True if this call performed the transition, False if the request
            was no longer pending.

        Raises:
            LedgerError: Unknown request, or a wrap addressed elsewhere.
            UnsupportedKeyFormatError: If the wrap format is unknown.
        """
        request = await self.directory.get_key_request(request_id)
        if request is None:
            raise LedgerError(f"Unknown key request {request_id}")

        if (
            wrapped.recipient_public_id != request.requester_public_id
            or wrapped.resource_id != request.resource_id
        ):
            raise LedgerError(f"Wrapped key does not match key request {request_id}")
        wrapped.check_format()

        if not request.is_pending:
            logger.debug("Key request %s already %s", request_id[:8], request.status.value)
            return False

        await self.directory.put_wrapped_key(wrapped)
        transitioned = await self.directory.transition_key_request(
            request_id, KeyRequestStatus.PENDING, KeyRequestStatus.FULFILLED, by=fulfilled_by
        )
        if transitioned:
            logger.info("Key request %s fulfilled by %s", request_id[:8], short_id(fulfilled_by))
            self._emit(LedgerEventType.FULFILLED, await self.directory.get_key_request(request_id))
        return transitioned

    async def reject(self, request_id: str) -> bool:
        """Reject a pending request. Returns False if it was not pending."""
        rejected = await self.directory.transition_key_request(
            request_id, KeyRequestStatus.PENDING, KeyRequestStatus.REJECTED
        )
        if rejected:
            self._emit(LedgerEventType.REJECTED, await self.directory.get_key_request(request_id))
        return rejected
