"""
Key request fulfiller: an always-on holder that answers key requests.

Requests arrive by push (ledger subscription) and by pull (periodic
polling, which also catches up after downtime). Both paths run the same
fulfill(): fetch our copy of the current key, wrap it for the requester and
hand the wrap to the ledger. Fulfillment always uses the current key
version, even for a request raised before a rotation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .channel_keys import ChannelKeyManager
from .keys import short_id
from .ledger import KeyRequestLedger
from .models import FulfillmentReport, KeyRequest, LedgerEvent, LedgerEventType
from .transport import BackoffConfig, ExponentialBackoff
from .types import NoKeyAvailableError, RelayKeysError

logger = logging.getLogger("relaykeys.fulfiller")


@dataclass
class FulfillerConfig:
    """Configuration for the key request fulfiller."""
    poll_interval: float = 30.0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    @classmethod
    def default(cls) -> "FulfillerConfig":
        return cls()

    @classmethod
    def fast(cls) -> "FulfillerConfig":
        """Short intervals, for tests."""
        return cls(poll_interval=0.05, backoff=BackoffConfig.fast())


class KeyRequestFulfiller:
    """
    Answers key requests for every resource the local principal holds.

    Example usage:
        ```python
        fulfiller = KeyRequestFulfiller(manager, ledger)
        fulfiller.attach()            # push
        task = asyncio.create_task(fulfiller.run())   # pull
        ...
        await fulfiller.stop()
        ```
    """

    def __init__(
        self,
        manager: ChannelKeyManager,
        ledger: KeyRequestLedger,
        config: Optional[FulfillerConfig] = None,
    ) -> None:
        self.manager = manager
        self.ledger = ledger
        self._config = config or FulfillerConfig()
        self._backoff = ExponentialBackoff(self._config.backoff)
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self.report = FulfillmentReport()

    async def fulfill(self, request: KeyRequest) -> FulfillmentReport:
        """Try to fulfill one request. Never raises for per-request failures."""
        report = FulfillmentReport()
        me = await self.manager.local_public_id()

        if request.target_public_id is not None and request.target_public_id != me:
            report.skipped.append(request.id)
        elif not request.is_pending:
            report.already_fulfilled.append(request.id)
        else:
            try:
                key = await self.manager.fetch(request.resource_id)
                wrapped = await self.manager.wrap_for(key, request.requester_public_id)
                if await self.ledger.fulfill(request.id, wrapped, me):
                    report.fulfilled.append(request.id)
                else:
                    report.already_fulfilled.append(request.id)
            except NoKeyAvailableError:
                logger.debug("No key for %s, leaving request %s", request.resource_id, request.id[:8])
                report.skipped.append(request.id)
            except RelayKeysError as e:
                logger.warning(
                    "Failed to fulfill request %s for %s: %s",
                    request.id[:8], short_id(request.requester_public_id), e,
                )
                report.failed[request.id] = str(e)

        self.report.merge(report)
        return report

    # MARK: - Push

    def attach(self) -> None:
        """Subscribe to the ledger and fulfill new requests as they appear."""
        if self._unsubscribe is None:
            self._unsubscribe = self.ledger.subscribe(self._on_ledger_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_ledger_event(self, event: LedgerEvent) -> None:
        if event.type != LedgerEventType.CREATED:
            return
        task = asyncio.get_running_loop().create_task(self.fulfill(event.request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for push-triggered fulfillments in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # MARK: - Pull

    async def poll_once(self) -> FulfillmentReport:
        """Fulfill every pending request addressed to us or to anyone."""
        me = await self.manager.local_public_id()
        report = FulfillmentReport()
        for request in await self.ledger.list_pending(target_public_id=me):
            report.merge(await self.fulfill(request))
        if report.fulfilled:
            logger.info("Fulfilled %d pending key request(s)", len(report.fulfilled))
        return report

    async def run(self) -> None:
        """Poll until stop(), backing off after errors."""
        self._stopped.clear()
        logger.info("Key request fulfiller started (poll every %ss)", self._config.poll_interval)
        while not self._stopped.is_set():
            try:
                await self.poll_once()
                self._backoff.reset()
                delay = self._config.poll_interval
            except Exception:
                delay = self._backoff.next_delay()
                logger.exception("Poll failed, retrying in %.2fs", delay)

            try:
                await asyncio.wait_for(self._stopped.wait(), delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Key request fulfiller stopped")

    async def stop(self) -> None:
        """Stop polling, detach from the ledger and finish in-flight work."""
        self._stopped.set()
        self.detach()
        await self.drain()
