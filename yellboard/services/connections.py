"""Registry of connected realtime clients and their read loops."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """The slice of a Starlette/FastAPI WebSocket the registry relies on."""

    async def send_text(self, data: str) -> None: ...

    async def receive(self) -> dict[str, Any]: ...


class ConnectionClosed(Exception):
    pass


def _frame_text(message: dict[str, Any]) -> str:
    """Text payload of an ASGI websocket message; raise once the peer is gone."""
    if message.get("type") == "websocket.disconnect":
        raise ConnectionClosed(message.get("code"))
    if message.get("text") is not None:
        return message["text"]
    if message.get("bytes") is not None:
        return message["bytes"].decode("utf-8")
    return ""


class ConnectionRegistry:
    """Lock-guarded set of realtime connections.

    Membership only changes under ``_lock``. ``on_connect`` is awaited after
    a connection is greeted (used to push a fresh listing); ``on_message``
    receives every path a client sends.
    """

    def __init__(
        self,
        greeting: str,
        on_connect: Callable[[], Awaitable[None]] | None = None,
        on_message: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.greeting = greeting
        self.on_connect = on_connect
        self.on_message = on_message
        self._connections: set = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn) -> bool:
        return conn in self._connections

    async def register(self, conn: Connection) -> None:
        async with self._lock:
            self._connections.add(conn)
            count = len(self._connections)
        logger.info("Client connected (%d connected)", count)
        try:
            await conn.send_text(json.dumps({"salutation": self.greeting}))
        except Exception as e:
            logger.warning("Could not greet client: %s", e)
        if self.on_connect is not None:
            await self.on_connect()

    async def unregister(self, conn: Connection) -> None:
        async with self._lock:
            self._connections.discard(conn)
            count = len(self._connections)
        logger.info("Client disconnected (%d connected)", count)

    async def broadcast_local(self, frame: str) -> None:
        """Send ``frame`` to every registered connection.

        A failed send is logged only; the connection leaves on its next failed read.
        """
        async with self._lock:
            for conn in list(self._connections):
                try:
                    await conn.send_text(frame)
                except Exception as e:
                    logger.warning("Send to client failed: %s", e)

    async def serve(self, conn: Connection) -> None:
        """Register ``conn`` and relay its frames until a read fails."""
        await self.register(conn)
        try:
            while True:
                try:
                    path = _frame_text(await conn.receive()).strip()
                except ConnectionClosed:
                    break
                except Exception as e:
                    logger.warning("Read from client failed: %s", e)
                    break
                if not path:
                    continue
                if self.on_message is not None:
                    await self.on_message(path)
        finally:
            await self.unregister(conn)
