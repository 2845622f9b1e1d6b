"""A scripted remote signer that answers over an InMemoryTransport."""

import asyncio
import json
import uuid
from typing import Any, Callable, Optional

from relaykeys.conversation import ConversationCipher
from relaykeys.descriptor import ConnectionDescriptor
from relaykeys.events import Event, EventTemplate, Filter, finalize_event
from relaykeys.keys import Identity
from relaykeys.signer import LocalSigner
from relaykeys.transport import Subscription, Transport
from relaykeys.types import CONNECT_ACK, SIGNER_EVENT_KIND, RelayKeysError


class FakeRemoteSigner:
    """
    Holds a user's secret and answers signer requests.

    Knobs:
        reply_with: "secret" echoes the pairing secret, "ack" sends the sentinel.
        duplicate_responses: publish every response twice.
        silent: receive requests but never answer.
        delay_for: seconds to wait before answering a given request.
        errors: method -> error message to answer with.
    """

    def __init__(
        self,
        transport: Transport,
        user: Identity,
        identity: Optional[Identity] = None,
    ) -> None:
        self.transport = transport
        self.user = LocalSigner(user)
        self.identity = identity or Identity.generate()
        self.cipher = ConversationCipher(self.identity)

        self.reply_with = "secret"
        self.duplicate_responses = False
        self.silent = False
        self.delay_for: Callable[[dict[str, Any]], float] = lambda request: 0.0
        self.errors: dict[str, str] = {}

        self.received: list[dict[str, Any]] = []
        self._subscription: Optional[Subscription] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def public_id(self) -> str:
        return self.identity.public_id

    async def start(self) -> None:
        self._subscription = await self.transport.subscribe(
            [Filter(kinds=[SIGNER_EVENT_KIND], p_tags=[self.public_id])],
            self._on_event,
        )

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        for task in list(self._tasks):
            task.cancel()

    async def accept(self, descriptor: ConnectionDescriptor) -> None:
        """Answer a nostrconnect:// descriptor the way a signer app would."""
        result = descriptor.secret if self.reply_with == "secret" else CONNECT_ACK
        await self.send(descriptor.client_public_id, {"id": uuid.uuid4().hex, "result": result})

    def build(
        self,
        client_public_id: str,
        message: dict[str, Any],
        identity: Optional[Identity] = None,
    ) -> Event:
        """Sign a message to a client without publishing it."""
        identity = identity or self.identity
        cipher = self.cipher if identity is self.identity else ConversationCipher(identity)
        return finalize_event(
            EventTemplate(
                kind=SIGNER_EVENT_KIND,
                content=cipher.encrypt(json.dumps(message), client_public_id),
                tags=[["p", client_public_id]],
            ),
            identity,
        )

    async def send(
        self,
        client_public_id: str,
        message: dict[str, Any],
        identity: Optional[Identity] = None,
    ) -> Event:
        """Publish an arbitrary message to a client."""
        event = self.build(client_public_id, message, identity)
        await self.transport.publish(event)
        return event

    def _on_event(self, event: Event) -> None:
        task = asyncio.get_running_loop().create_task(self._handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, event: Event) -> None:
        result = self.cipher.decrypt(event.content, event.pubkey)
        if not result.authenticated:
            return
        request = json.loads(result.plaintext)
        if any(r["id"] == request["id"] for r in self.received):
            return
        self.received.append(request)

        if self.silent:
            return

        delay = self.delay_for(request)
        if delay:
            await asyncio.sleep(delay)

        response = await self._respond(request)
        await self.send(event.pubkey, response)
        if self.duplicate_responses:
            await self.send(event.pubkey, response)

    async def _respond(self, request: dict[str, Any]) -> dict[str, Any]:
        method = request["method"]
        params = request.get("params", [])

        if method in self.errors:
            return {"id": request["id"], "error": self.errors[method]}

        try:
            if method == "connect":
                secret = params[1] if len(params) > 1 else ""
                result = secret if self.reply_with == "secret" and secret else CONNECT_ACK
            elif method == "get_public_key":
                result = await self.user.get_public_key()
            elif method == "sign_event":
                template = EventTemplate.from_dict(json.loads(params[0]))
                result = (await self.user.sign_event(template)).to_json()
            elif method == "nip44_encrypt":
                result = await self.user.encrypt(params[0], params[1])
            elif method == "nip44_decrypt":
                result = await self.user.decrypt(params[0], params[1])
            elif method == "ping":
                result = "pong"
            else:
                return {"id": request["id"], "error": f"unsupported method {method}"}
        except RelayKeysError as e:
            return {"id": request["id"], "error": str(e)}

        return {"id": request["id"], "result": result}
