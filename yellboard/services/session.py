"""One group's running session: wires the services and owns their subscriptions."""
import logging
from contextlib import AsyncExitStack

from ..config import Settings
from .broker import MessageBroker
from .connections import ConnectionRegistry
from .library import LibraryIndex
from .playback import PlaybackRelay
from .player import PlayerAdapter
from .sync import SyncEngine
from .transfer import TransferService

logger = logging.getLogger(__name__)


class GroupSession:
    """Everything a process runs for its single active group.

    Only one group per process: client play requests always go to this
    session's group, whatever scope the client connected with.
    """

    def __init__(self, settings: Settings, broker: MessageBroker, player: PlayerAdapter):
        self.settings = settings
        self.group_id = settings.group_id
        self.broker = broker
        self.player = player
        self.index = LibraryIndex(settings.storage_root)
        self.transfer = TransferService(self.group_id, self.index)
        self.registry = ConnectionRegistry(greeting=f"hello, moto #{self.group_id}")
        self.sync = SyncEngine(
            self.group_id,
            self.index,
            broker,
            self.transfer,
            push_local=self.registry.broadcast_local,
            interval=settings.broadcast_interval,
            fetch_timeout=settings.fetch_timeout,
            max_fetches=settings.max_fetches,
        )
        self.playback = PlaybackRelay(
            self.group_id, self.index, broker, player, push_local=self.registry.broadcast_local
        )
        self.registry.on_connect = self._on_connect
        self.registry.on_message = self.playback.request_playback
        self._stack: AsyncExitStack | None = None

    async def _on_connect(self) -> None:
        await self.sync.broadcast()

    async def start(self) -> None:
        if self._stack is not None:
            raise RuntimeError(f"session for {self.group_id} already started")
        stack = AsyncExitStack()
        try:
            stack.push_async_callback(self.player.close)
            handle = await self.playback.start()
            stack.push_async_callback(handle.unsubscribe)
            stack.push_async_callback(self.sync.stop)
            for handle in await self.sync.start():
                stack.push_async_callback(handle.unsubscribe)
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        logger.info("Session started for group %s in %s", self.group_id, self.index.group_dir(self.group_id))

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        if stack is None:
            return
        await stack.aclose()
        logger.info("Session for group %s closed", self.group_id)

    async def __aenter__(self) -> "GroupSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def diagnostics(self) -> dict:
        return {
            "group": self.group_id,
            "connected_clients": len(self.registry),
            "local_clips": len(self.sync.local),
            "fetches_in_flight": self.sync.in_flight,
            "now_playing": self.playback.now_playing,
        }
