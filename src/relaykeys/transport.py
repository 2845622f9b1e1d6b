"""
Relay transport: publish/subscribe over a multi-homed relay set.

Transport is a supplied collaborator. Delivery is at-least-once and
unordered across relays: an event published to N relays may reach a
subscriber N times, so every handler has to be idempotent.

InMemoryRelayNetwork and InMemoryTransport implement the contract in
process, for tests and local use.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .events import Event, Filter
from .types import TransportError

logger = logging.getLogger("relaykeys.transport")

EventHandler = Callable[[Event], None]


class Subscription:
    """Handle for a live subscription. close() is idempotent."""

    def __init__(
        self,
        filters: list[Filter],
        on_event: EventHandler,
        on_close: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.filters = list(filters)
        self._on_event = on_event
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: Event) -> bool:
        return any(f.matches(event) for f in self.filters)

    def deliver(self, event: Event) -> None:
        """Hand an event to the subscriber. Handler errors are logged."""
        if self._closed or not self.matches(event):
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Subscription %s handler failed on event %s", self.id[:8], event.id[:12])

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)


class Transport(ABC):
    """Interface for a relay transport."""

    @abstractmethod
    async def publish(self, event: Event) -> list[str]:
        """
        Publish an event to every relay in the set.

        Returns:
            Names of the relays that accepted the event.

        Raises:
            TransportError: If no relay accepted the event.
        """
        ...

    @abstractmethod
    async def subscribe(self, filters: list[Filter], on_event: EventHandler) -> Subscription:
        """Subscribe on every relay in the set. Stored matches are replayed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close every subscription opened through this transport."""
        ...

    @property
    @abstractmethod
    def relays(self) -> list[str]:
        """Relay addresses this transport talks to."""
        ...

    @property
    @abstractmethod
    def active_subscriptions(self) -> int:
        """Number of subscriptions still open."""
        ...

    @property
    @abstractmethod
    def connectivity(self) -> dict[str, bool]:
        """Last known connection state of each relay."""
        ...


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""
    base: float = 1.0
    factor: float = 2.0
    ceiling: float = 60.0
    jitter: float = 0.0

    @classmethod
    def default(cls) -> "BackoffConfig":
        return cls()

    @classmethod
    def fast(cls) -> "BackoffConfig":
        """Short delays, for tests."""
        return cls(base=0.01, factor=2.0, ceiling=0.1)


class ExponentialBackoff:
    """
    Exponential backoff with a bounded ceiling.

    Each next_delay() call returns base * factor**attempt, capped at the
    ceiling. With jitter set, the delay is scaled by a random factor in
    [1 - jitter, 1 + jitter] and capped again.
    """

    def __init__(self, config: Optional[BackoffConfig] = None) -> None:
        self._config = config or BackoffConfig()
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def next_delay(self) -> float:
        config = self._config
        delay = min(config.ceiling, config.base * (config.factor ** self._attempt))
        if delay < config.ceiling:
            self._attempt += 1
        if config.jitter:
            delay *= random.uniform(1 - config.jitter, 1 + config.jitter)
        return min(config.ceiling, max(0.0, delay))

    def reset(self) -> None:
        self._attempt = 0


class InMemoryRelay:
    """
    A single relay: stores events and fans them out to subscriptions.

    Taking the relay offline drops every attached subscription, the way a
    lost connection does, and tells the watching transports.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self.online = True
        self._events: dict[str, Event] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._watchers: list[Callable[[str], None]] = []

    @property
    def events(self) -> list[Event]:
        return list(self._events.values())

    def accept(self, event: Event) -> None:
        if not self.online:
            raise TransportError(f"Relay {self.url} is unreachable")
        if event.id in self._events:
            return
        self._events[event.id] = event
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions.values()):
            if subscription.matches(event):
                loop.call_soon(subscription.deliver, event)

    def attach(self, subscription: Subscription) -> None:
        if not self.online:
            raise TransportError(f"Relay {self.url} is unreachable")
        self._subscriptions[subscription.id] = subscription
        loop = asyncio.get_running_loop()
        for event in list(self._events.values()):
            if subscription.matches(event):
                loop.call_soon(subscription.deliver, event)

    def detach(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def set_online(self, online: bool) -> None:
        was_online, self.online = self.online, online
        if was_online and not online:
            self._subscriptions.clear()
            for watcher in list(self._watchers):
                watcher(self.url)

    def watch(self, on_drop: Callable[[str], None]) -> None:
        """Call on_drop(url) whenever the relay goes offline."""
        if on_drop not in self._watchers:
            self._watchers.append(on_drop)

    def unwatch(self, on_drop: Callable[[str], None]) -> None:
        if on_drop in self._watchers:
            self._watchers.remove(on_drop)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


class InMemoryRelayNetwork:
    """A set of named in-memory relays shared by every transport in a test."""

    def __init__(self, urls: Optional[list[str]] = None) -> None:
        self._relays: dict[str, InMemoryRelay] = {}
        for url in urls or []:
            self.add_relay(url)

    def add_relay(self, url: str) -> InMemoryRelay:
        relay = self._relays.get(url)
        if relay is None:
            relay = InMemoryRelay(url)
            self._relays[url] = relay
        return relay

    def get(self, url: str) -> Optional[InMemoryRelay]:
        return self._relays.get(url)

    def set_online(self, url: str, online: bool) -> None:
        self.add_relay(url).set_online(online)

    @property
    def urls(self) -> list[str]:
        return list(self._relays)

    @property
    def subscription_count(self) -> int:
        """Open subscriptions across every relay."""
        return sum(relay.subscription_count for relay in self._relays.values())


class InMemoryTransport(Transport):
    """
    Multi-homed transport over an InMemoryRelayNetwork.

    A relay that refuses a subscription, or drops it later, is retried in
    the background with exponential backoff until every open subscription
    is attached there again. connectivity reports the last known state of
    each relay.

    Example usage:
        ```python
        network = InMemoryRelayNetwork(["wss://a", "wss://b"])
        transport = InMemoryTransport(network, ["wss://a", "wss://b"])

        sub = await transport.subscribe([Filter(kinds=[24133])], handler)
        await transport.publish(event)   # handler sees it up to twice
        sub.close()
        ```
    """

    def __init__(
        self,
        network: InMemoryRelayNetwork,
        relays: list[str],
        backoff: Optional[BackoffConfig] = None,
    ) -> None:
        self._network = network
        self._relays = list(dict.fromkeys(relays))
        self._backoff = backoff or BackoffConfig.default()
        self._subscriptions: dict[str, Subscription] = {}
        self._attached: dict[str, set[str]] = {url: set() for url in self._relays}
        self._connected: dict[str, bool] = {url: False for url in self._relays}
        self._reconnects: dict[str, asyncio.Task] = {}

    @property
    def relays(self) -> list[str]:
        return list(self._relays)

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    @property
    def connectivity(self) -> dict[str, bool]:
        return dict(self._connected)

    @property
    def reconnecting(self) -> list[str]:
        """Relays with a reconnect loop running."""
        return list(self._reconnects)

    async def publish(self, event: Event) -> list[str]:
        accepted = []
        for url in self._relays:
            relay = self._network.get(url)
            if relay is None:
                logger.warning("Relay %s is unknown, skipping publish", url)
                continue
            try:
                relay.accept(event)
                accepted.append(url)
                self._set_connected(url, True)
            except TransportError as e:
                logger.warning("Publish to %s failed: %s", url, e)
                self._set_connected(url, False)

        if not accepted:
            raise TransportError(f"No relay accepted event {event.id[:12]}")
        return accepted

    async def subscribe(self, filters: list[Filter], on_event: EventHandler) -> Subscription:
        subscription = Subscription(filters, on_event, on_close=self._release)

        attached = 0
        failed = []
        for url in self._relays:
            relay = self._network.get(url)
            if relay is None:
                continue
            relay.watch(self._on_relay_dropped)
            try:
                relay.attach(subscription)
                self._attached[url].add(subscription.id)
                self._set_connected(url, True)
                attached += 1
            except TransportError as e:
                logger.warning("Subscribe on %s failed: %s", url, e)
                self._set_connected(url, False)
                failed.append(url)

        if attached == 0:
            raise TransportError("No relay accepted the subscription")

        self._subscriptions[subscription.id] = subscription
        for url in failed:
            self._schedule_reconnect(url)
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.close()
        for task in list(self._reconnects.values()):
            task.cancel()
        self._reconnects.clear()
        for url in self._relays:
            relay = self._network.get(url)
            if relay is not None:
                relay.unwatch(self._on_relay_dropped)

    # MARK: - Reconnect

    def _set_connected(self, url: str, connected: bool) -> None:
        if self._connected.get(url) != connected:
            logger.debug("Relay %s %s", url, "connected" if connected else "disconnected")
        self._connected[url] = connected

    def _missing(self, url: str) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.id not in self._attached[url]]

    def _on_relay_dropped(self, url: str) -> None:
        if url not in self._attached:
            return
        self._attached[url].clear()
        self._set_connected(url, False)
        logger.warning("Lost connection to %s", url)
        self._schedule_reconnect(url)

    def _schedule_reconnect(self, url: str) -> None:
        if url in self._reconnects or not self._missing(url):
            return
        self._reconnects[url] = asyncio.get_running_loop().create_task(self._reconnect(url))

    async def _reconnect(self, url: str) -> None:
        backoff = ExponentialBackoff(self._backoff)
        try:
            while self._missing(url):
                await asyncio.sleep(backoff.next_delay())
                relay = self._network.get(url)
                missing = self._missing(url)
                if relay is None or not missing:
                    return
                try:
                    for subscription in missing:
                        relay.attach(subscription)
                        self._attached[url].add(subscription.id)
                except TransportError as e:
                    logger.debug("Reconnect to %s failed (attempt %d): %s", url, backoff.attempt, e)
                    continue
                self._set_connected(url, True)
                logger.info("Reconnected to %s", url)
                backoff.reset()
        finally:
            if self._reconnects.get(url) is asyncio.current_task():
                del self._reconnects[url]

    def _release(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        for url in self._relays:
            self._attached[url].discard(subscription.id)
            relay = self._network.get(url)
            if relay is not None:
                relay.detach(subscription)
