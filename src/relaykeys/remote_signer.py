"""
Remote signer session: delegate signing to a custodian reachable over relays.

The session owns an ephemeral identity. Pairing publishes nothing: the user
carries a ConnectionDescriptor to the signer out of band, and the signer
answers with a connect response that echoes the descriptor's secret (or
the "ack" sentinel). After that, every call is a correlated request/response
pair of kind-24133 events whose content is a conversation payload between
the ephemeral identity and the signer.

    IDLE -> AWAITING_CONNECT -> CONNECTED <-> AWAITING_RESPONSE
    any non-terminal state -> CANCELLED | EXPIRED | CLOSED
"""

import asyncio
import json
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .conversation import ConversationCipher
from .descriptor import BunkerPointer, ConnectionDescriptor, generate_secret
from .events import Event, EventTemplate, Filter, finalize_event, verify_event
from .keys import Identity, short_id
from .models import SignerConnection
from .signer import Signer
from .storage.connection_storage import ConnectionStorage
from .transport import Subscription, Transport
from .types import (
    CONNECT_ACK,
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    SIGNER_EVENT_KIND,
    DecryptionError,
    HandshakeTimeoutError,
    InvalidEnvelopeError,
    InvalidSignatureError,
    SessionCancelledError,
    SessionStateError,
    SignerRemoteError,
    SignerTimeoutError,
)

logger = logging.getLogger("relaykeys.remote_signer")

DEFAULT_PERMS = ["get_public_key", "sign_event", "nip44_encrypt", "nip44_decrypt"]

# Events already seen, kept to drop redeliveries from other relays
_SEEN_EVENTS_LIMIT = 4096


class SessionState(Enum):
    """Lifecycle of a remote signer session."""
    IDLE = "idle"
    AWAITING_CONNECT = "awaiting_connect"
    CONNECTED = "connected"
    AWAITING_RESPONSE = "awaiting_response"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CANCELLED, SessionState.EXPIRED, SessionState.CLOSED)


@dataclass
class SignerConfig:
    """Configuration for a remote signer session."""
    relays: list[str]
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    name: Optional[str] = None
    url: Optional[str] = None
    image: Optional[str] = None
    perms: list[str] = field(default_factory=lambda: list(DEFAULT_PERMS))
    # Seconds subtracted from "now" in subscription filters to absorb clock skew
    clock_skew: int = 10

    @classmethod
    def default(cls, relays: list[str], name: Optional[str] = None) -> "SignerConfig":
        return cls(relays=list(relays), name=name)


@dataclass
class _PendingCall:
    method: str
    future: asyncio.Future
    issued_at: float


class RemoteSignerSession(Signer):
    """
    Signer that forwards every operation to a remote custodian.

    Example usage:
        ```python
        session = RemoteSignerSession(transport, SignerConfig.default(relays, name="app"))
        descriptor = await session.start()
        show_qr(descriptor.to_uri())

        await session.wait_for_connect()
        event = await session.sign_event(EventTemplate(kind=1, content="hi"))
        ```
    """

    def __init__(
        self,
        transport: Transport,
        config: SignerConfig,
        identity: Optional[Identity] = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._identity = identity or Identity.generate()
        self._cipher = ConversationCipher(self._identity)

        self._state = SessionState.IDLE
        self._remote_signer_public_id: Optional[str] = None
        self._user_public_id: Optional[str] = None
        self._secret: Optional[str] = None
        self._descriptor: Optional[ConnectionDescriptor] = None

        self._subscription: Optional[Subscription] = None
        self._handshake: Optional[asyncio.Future] = None
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._pending: dict[str, _PendingCall] = {}
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    # MARK: - Properties

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client_public_id(self) -> str:
        """The session's ephemeral public id."""
        return self._identity.public_id

    @property
    def remote_signer_public_id(self) -> Optional[str]:
        return self._remote_signer_public_id

    @property
    def descriptor(self) -> Optional[ConnectionDescriptor]:
        return self._descriptor

    @property
    def pending_count(self) -> int:
        """Calls awaiting a response."""
        return len(self._pending)

    @property
    def connection(self) -> SignerConnection:
        """
        What to persist for silent reconnection.

        Raises:
            SessionStateError: Before the handshake completed.
        """
        if self._remote_signer_public_id is None:
            raise SessionStateError("Session has no remote signer yet")
        return SignerConnection(
            client_secret=self._identity.secret.to_hex(),
            remote_signer_public_id=self._remote_signer_public_id,
            relays=list(self._config.relays),
            user_public_id=self._user_public_id,
        )

    # MARK: - Pairing

    async def start(self) -> ConnectionDescriptor:
        """
        Begin client-initiated pairing.

        Subscribes for events addressed to the ephemeral identity and
        returns the descriptor to show the user.

        Raises:
            SessionStateError: If the session is not idle.
        """
        self._require_state(SessionState.IDLE)

        self._secret = generate_secret()
        self._descriptor = ConnectionDescriptor(
            client_public_id=self.client_public_id,
            relays=list(self._config.relays),
            secret=self._secret,
            name=self._config.name,
            url=self._config.url,
            image=self._config.image,
            perms=list(self._config.perms),
        )
        loop = asyncio.get_running_loop()
        self._handshake = loop.create_future()
        self._state = SessionState.AWAITING_CONNECT
        await self._open_subscription()
        self._handshake_timer = loop.call_later(
            self._config.handshake_timeout, self._expire_handshake
        )

        logger.info("Waiting for remote signer on %d relay(s)", len(self._config.relays))
        return self._descriptor

    async def wait_for_connect(self) -> str:
        """
        Wait for the signer's connect response.

        The handshake deadline runs from start(), whether or not anyone
        waits. Cancelling the waiting task cancels the session.

        Returns:
            The remote signer's public id.

        Raises:
            HandshakeTimeoutError: If no valid response arrives within the
                handshake timeout. The session is then expired and its
                subscription closed.
            SessionCancelledError: If the session is cancelled meanwhile.
        """
        if self._handshake is None:
            raise SessionStateError("Pairing has not been started")

        try:
            return await asyncio.shield(self._handshake)
        except asyncio.CancelledError:
            if self._state == SessionState.AWAITING_CONNECT:
                logger.debug("Handshake wait cancelled for %s", short_id(self.client_public_id))
                self._terminate(SessionState.CANCELLED, SessionCancelledError())
            raise

    @classmethod
    async def connect_bunker(
        cls,
        pointer: BunkerPointer,
        transport: Transport,
        config: Optional[SignerConfig] = None,
        identity: Optional[Identity] = None,
    ) -> "RemoteSignerSession":
        """
        Pair with a signer that published a bunker:// pointer.

        Sends a connect request carrying the pointer's secret. The signer may
        answer with "ack" or echo the secret.

        Raises:
            HandshakeTimeoutError: If the signer does not answer in time.
            SignerRemoteError: If the signer refuses or answers unexpectedly.
        """
        config = config or SignerConfig.default(pointer.relays)
        session = cls(transport, config, identity)
        session._remote_signer_public_id = pointer.signer_public_id
        session._secret = pointer.secret
        session._state = SessionState.AWAITING_CONNECT
        await session._open_subscription()

        params = [pointer.signer_public_id, pointer.secret or "", ",".join(config.perms)]
        try:
            result = await session._call("connect", params, timeout=config.handshake_timeout)
        except SignerTimeoutError:
            session._terminate(SessionState.EXPIRED, HandshakeTimeoutError(config.handshake_timeout))
            raise HandshakeTimeoutError(config.handshake_timeout) from None
        except BaseException:
            session._terminate(SessionState.CLOSED, SessionCancelledError())
            raise

        if not session._is_connect_success(result):
            session._terminate(SessionState.CLOSED, SessionCancelledError())
            raise SignerRemoteError("connect", f"unexpected connect result {result!r}")

        session._state = SessionState.CONNECTED
        logger.info("Connected to remote signer %s", short_id(pointer.signer_public_id))
        return session

    @classmethod
    async def restore(
        cls,
        connection: SignerConnection,
        transport: Transport,
        config: Optional[SignerConfig] = None,
    ) -> "RemoteSignerSession":
        """
        Reconnect silently from a persisted connection.

        Only the request/response loop is re-established; no secret is
        matched again.
        """
        config = config or SignerConfig.default(connection.relays)
        session = cls(transport, config, Identity.from_secret_hex(connection.client_secret))
        session._remote_signer_public_id = connection.remote_signer_public_id
        session._user_public_id = connection.user_public_id
        session._state = SessionState.CONNECTED
        await session._open_subscription()
        logger.debug("Restored session with %s", short_id(connection.remote_signer_public_id))
        return session

    async def persist(self, storage: ConnectionStorage, name: str = "default") -> None:
        """Save this session's connection for restore()."""
        await storage.save(name, self.connection)

    # MARK: - Signer operations

    async def get_public_key(self) -> str:
        """The user's public id, cached for the session."""
        if self._user_public_id is None:
            self._user_public_id = await self._call("get_public_key", [])
        return self._user_public_id

    async def user_public_key(self) -> str:
        return await self.get_public_key()

    async def sign_event(self, template: EventTemplate) -> Event:
        """
        Raises:
            InvalidSignatureError: If the signer returns an invalid event.
        """
        result = await self._call("sign_event", [json.dumps(template.to_dict())])
        try:
            event = Event.from_json(result)
        except InvalidEnvelopeError as e:
            raise InvalidSignatureError(f"Signer returned an unreadable event: {e}") from e

        if not verify_event(event):
            raise InvalidSignatureError("Signer returned an event with an invalid signature")
        if self._user_public_id is not None and event.pubkey != self._user_public_id:
            raise InvalidSignatureError("Signer signed as an unexpected principal")
        return event

    async def encrypt(self, peer_public_id: str, plaintext: str) -> str:
        return await self._call("nip44_encrypt", [peer_public_id, plaintext])

    async def decrypt(self, peer_public_id: str, ciphertext: str) -> str:
        try:
            return await self._call("nip44_decrypt", [peer_public_id, ciphertext])
        except SignerRemoteError as e:
            raise DecryptionError(f"Remote signer could not decrypt: {e.remote_message}") from e

    async def ping(self) -> bool:
        return await self._call("ping", []) == "pong"

    # MARK: - Shutdown

    async def cancel(self) -> None:
        """
        Cancel the session.

        Closes the subscription at once and rejects every in-flight call
        (and a pending handshake) with SessionCancelledError.
        """
        if self._state.is_terminal:
            return
        logger.debug("Session %s cancelled", short_id(self.client_public_id))
        self._terminate(SessionState.CANCELLED, SessionCancelledError())

    async def close(self) -> None:
        """Close the session after use."""
        if self._state.is_terminal:
            return
        self._terminate(SessionState.CLOSED, SessionCancelledError())

    # MARK: - Internals

    async def _call(
        self,
        method: str,
        params: list[str],
        timeout: Optional[float] = None,
    ) -> Any:
        if self._state == SessionState.CANCELLED:
            raise SessionCancelledError()
        allowed = (SessionState.CONNECTED, SessionState.AWAITING_RESPONSE)
        if method == "connect":
            allowed = (SessionState.AWAITING_CONNECT,)
        if self._state not in allowed:
            raise SessionStateError(f"Cannot call {method!r} while {self._state.value}")

        remote = self._remote_signer_public_id
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingCall(method, future, time.monotonic())
        if self._state == SessionState.CONNECTED:
            self._state = SessionState.AWAITING_RESPONSE

        timeout = self._config.request_timeout if timeout is None else timeout
        try:
            payload = json.dumps({"id": request_id, "method": method, "params": params})
            event = finalize_event(
                EventTemplate(
                    kind=SIGNER_EVENT_KIND,
                    content=self._cipher.encrypt(payload, remote),
                    tags=[["p", remote]],
                ),
                self._identity,
            )
            await self._transport.publish(event)
            logger.debug("Sent %s request %s", method, request_id[:8])

            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                logger.warning("Signer request %s (%s) timed out", method, request_id[:8])
                raise SignerTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)
            if not self._pending and self._state == SessionState.AWAITING_RESPONSE:
                self._state = SessionState.CONNECTED

    async def _open_subscription(self) -> None:
        since = int(time.time()) - self._config.clock_skew
        self._subscription = await self._transport.subscribe(
            [Filter(kinds=[SIGNER_EVENT_KIND], p_tags=[self.client_public_id], since=since)],
            self._on_event,
        )

    def _on_event(self, event: Event) -> None:
        """Single handler for the merged stream of every relay."""
        if self._state.is_terminal:
            return

        if event.id in self._seen:
            logger.debug("Dropping duplicate event %s", event.id[:12])
            return

        # Only verified events are remembered, so a corrupted copy from one
        # relay cannot shadow the genuine event from another.
        if not verify_event(event):
            logger.debug("Dropping event %s with invalid signature", event.id[:12])
            return

        self._seen[event.id] = None
        if len(self._seen) > _SEEN_EVENTS_LIMIT:
            self._seen.popitem(last=False)

        if self._state == SessionState.AWAITING_CONNECT and self._remote_signer_public_id is None:
            self._handle_connect_response(event)
            return

        if event.pubkey != self._remote_signer_public_id:
            logger.debug("Dropping event from unexpected author %s", short_id(event.pubkey))
            return

        message = self._open(event)
        if message is None:
            return

        call = self._pending.get(str(message.get("id")))
        if call is None or call.future.done():
            logger.debug("Dropping response with unknown id %s", str(message.get("id"))[:8])
            return

        error = message.get("error")
        if error:
            call.future.set_exception(SignerRemoteError(call.method, str(error)))
        else:
            call.future.set_result(message.get("result"))

    def _handle_connect_response(self, event: Event) -> None:
        message = self._open(event)
        if message is None:
            return

        if not self._is_connect_success(message.get("result")):
            logger.debug("Ignoring non-matching connect response from %s", short_id(event.pubkey))
            return

        if self._handshake is None or self._handshake.done():
            return

        self._cancel_handshake_timer()
        self._remote_signer_public_id = event.pubkey
        self._state = SessionState.CONNECTED
        self._secret = None
        self._handshake.set_result(event.pubkey)
        logger.info("Connected to remote signer %s", short_id(event.pubkey))

    def _expire_handshake(self) -> None:
        self._handshake_timer = None
        if self._state != SessionState.AWAITING_CONNECT:
            return
        logger.warning(
            "Remote signer did not connect within %ss", self._config.handshake_timeout
        )
        self._terminate(SessionState.EXPIRED, HandshakeTimeoutError(self._config.handshake_timeout))

    def _is_connect_success(self, result: Any) -> bool:
        # Signers differ in which of the two they send; both count.
        if result == CONNECT_ACK:
            return True
        return self._secret is not None and result == self._secret

    def _open(self, event: Event) -> Optional[dict[str, Any]]:
        """Decrypt and parse event content, or None if it is unusable."""
        result = self._cipher.decrypt(event.content, event.pubkey)
        if not result.authenticated:
            logger.debug("Dropping undecryptable event %s (%s)", event.id[:12], result.error)
            return None
        try:
            message = json.loads(result.plaintext)
        except json.JSONDecodeError:
            logger.debug("Dropping event %s with non-JSON content", event.id[:12])
            return None
        if not isinstance(message, dict) or "id" not in message:
            logger.debug("Dropping event %s without an id", event.id[:12])
            return None
        return message

    def _terminate(self, state: SessionState, error: BaseException) -> None:
        self._state = state
        self._cancel_handshake_timer()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)
            # Retrieved here so an unawaited handshake does not warn
            self._handshake.exception()

        for call in list(self._pending.values()):
            if not call.future.done():
                call.future.set_exception(SessionCancelledError())
        self._pending.clear()
        self._secret = None

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    def _require_state(self, *states: SessionState) -> None:
        if self._state == SessionState.CANCELLED:
            raise SessionCancelledError()
        if self._state not in states:
            raise SessionStateError(f"Session is {self._state.value}")
