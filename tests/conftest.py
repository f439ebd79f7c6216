"""
Shared fakes: an in-memory broker, realtime connections, and settings.
"""
import asyncio
from collections import defaultdict

import pytest

from yellboard.config import Settings
from yellboard.errors import TransferError
from yellboard.services.broker import Message


class FakeSubscription:
    def __init__(self, broker, topic, handler):
        self.broker = broker
        self.topic = topic
        self.handler = handler

    async def unsubscribe(self):
        subs = self.broker.subs.get(self.topic, [])
        if self in subs:
            subs.remove(self)


class FakeBroker:
    """Single in-process "cluster": every subscriber, the publisher included, gets each message."""

    def __init__(self):
        self.subs = defaultdict(list)
        self.published = []
        self.requests = []
        self.closed = False
        self._tasks = set()

    def _dispatch(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def publish(self, topic, data):
        self.published.append((topic, data))
        for sub in list(self.subs[topic]):
            self._dispatch(sub.handler(Message(topic, data)))

    async def subscribe(self, topic, handler):
        sub = FakeSubscription(self, topic, handler)
        self.subs[topic].append(sub)
        return sub

    async def request(self, topic, data, timeout):
        self.requests.append((topic, data, timeout))
        reply = asyncio.get_running_loop().create_future()

        async def respond(payload):
            if not reply.done():
                reply.set_result(payload)

        for sub in list(self.subs[topic]):
            self._dispatch(sub.handler(Message(topic, data, respond)))
        try:
            return await asyncio.wait_for(reply, timeout)
        except asyncio.TimeoutError:
            raise TransferError(f"no reply on {topic} within {timeout}s") from None

    async def settle(self):
        """Wait for every delivered message to be handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        self.closed = True

    def topics(self):
        return sorted(topic for topic, subs in self.subs.items() if subs)


class FakeConnection:
    """Stands in for a FastAPI WebSocket: scripted inbound frames, recorded outbound ones."""

    def __init__(self, incoming=(), fail_send=False, fail_read=None):
        self.incoming = list(incoming)
        self.sent = []
        self.fail_send = fail_send
        self.fail_read = fail_read

    async def send_text(self, data):
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def receive(self):
        if self.incoming:
            return self.incoming.pop(0)
        if self.fail_read is not None:
            raise self.fail_read
        return {"type": "websocket.disconnect", "code": 1000}


def text_frame(text):
    return {"type": "websocket.receive", "text": text}


def bytes_frame(data):
    return {"type": "websocket.receive", "bytes": data}


def add_clips(directory, *names, content=None):
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(content if content is not None else name.encode())


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def settings(tmp_path):
    return Settings(group_id="g", storage_root=tmp_path / "lib", player="none", fetch_timeout=1.0)
