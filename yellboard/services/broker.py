"""Broker capability: topic-scoped publish, subscribe and request/reply over NATS."""
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

import nats
from nats.errors import Error as NatsError
from nats.errors import NoRespondersError
from nats.errors import TimeoutError as NatsTimeoutError

from ..errors import BrokerError, TransferError

logger = logging.getLogger(__name__)


async def _no_reply(data: bytes) -> None:
    logger.debug("Dropping reply of %d bytes: message has no reply subject", len(data))


@dataclass
class Message:
    """One delivered message. ``respond`` answers a request/reply call."""

    subject: str
    data: bytes
    _respond: Callable[[bytes], Awaitable[None]] = field(default=_no_reply, repr=False)

    async def respond(self, data: bytes) -> None:
        await self._respond(data)


Handler = Callable[[Message], Awaitable[None]]


class Subscription(Protocol):
    async def unsubscribe(self) -> None: ...


class MessageBroker(Protocol):
    async def publish(self, topic: str, data: bytes) -> None: ...

    async def subscribe(self, topic: str, handler: Handler) -> Subscription: ...

    async def request(self, topic: str, data: bytes, timeout: float) -> bytes: ...

    async def close(self) -> None: ...


class NatsSubscription:
    def __init__(self, sub):
        self._sub = sub
        self._active = True

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            await self._sub.unsubscribe()
        except NatsError as e:
            logger.warning("Unsubscribe from %s failed: %s", self._sub.subject, e)


class NatsBroker:
    """MessageBroker backed by a single nats-py connection."""

    def __init__(self, nc):
        self._nc = nc

    @classmethod
    async def connect(cls, url: str) -> "NatsBroker":
        try:
            nc = await nats.connect(url, name="yellboard")
        except Exception as e:
            raise BrokerError(f"could not connect to {url}: {e}") from e
        logger.info("Connected to broker at %s", url)
        return cls(nc)

    async def publish(self, topic: str, data: bytes) -> None:
        try:
            await self._nc.publish(topic, data)
        except NatsError as e:
            raise BrokerError(f"publish on {topic} failed: {e}") from e

    async def subscribe(self, topic: str, handler: Handler) -> NatsSubscription:
        async def deliver(msg):
            async def reply(data: bytes) -> None:
                try:
                    await msg.respond(data)
                except NatsError as e:
                    raise BrokerError(f"reply on {msg.subject} failed: {e}") from e

            await handler(Message(msg.subject, msg.data, reply if msg.reply else _no_reply))

        try:
            sub = await self._nc.subscribe(topic, cb=deliver)
        except NatsError as e:
            raise BrokerError(f"subscribe to {topic} failed: {e}") from e
        logger.info("Subscribed to %s", topic)
        return NatsSubscription(sub)

    async def request(self, topic: str, data: bytes, timeout: float) -> bytes:
        try:
            msg = await self._nc.request(topic, data, timeout=timeout)
        except NatsTimeoutError as e:
            raise TransferError(f"no reply on {topic} within {timeout:g}s") from e
        except NoRespondersError as e:
            raise TransferError(f"no responders on {topic}") from e
        except NatsError as e:
            raise BrokerError(f"request on {topic} failed: {e}") from e
        return msg.data

    async def close(self) -> None:
        if self._nc.is_closed:
            return
        try:
            await self._nc.drain()
        except NatsError as e:
            logger.warning("Broker drain failed: %s", e)
            await self._nc.close()
