"""Group-wide playback: every peer, the sender included, plays what is published."""
import json
import logging
from typing import Awaitable, Callable

from ..errors import BrokerError
from .broker import Message, MessageBroker, Subscription
from .library import LibraryIndex
from .player import PlayerAdapter

logger = logging.getLogger(__name__)


def playback_topic(group_id: str) -> str:
    return f"{group_id}.playback"


class PlaybackRelay:
    def __init__(
        self,
        group_id: str,
        index: LibraryIndex,
        broker: MessageBroker,
        player: PlayerAdapter,
        push_local: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.group_id = group_id
        self.index = index
        self.broker = broker
        self.player = player
        self.push_local = push_local
        self.now_playing: str | None = None

    async def start(self) -> Subscription:
        return await self.broker.subscribe(playback_topic(self.group_id), self._on_message)

    async def request_playback(self, path: str) -> None:
        """Ask every peer in the group to play ``path``. Fire-and-forget."""
        try:
            await self.broker.publish(playback_topic(self.group_id), path.encode("utf-8"))
        except BrokerError as e:
            logger.warning("Could not request playback of %s: %s", path, e)

    async def _on_message(self, msg: Message) -> None:
        try:
            path = msg.data.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Ignoring playback event with non-UTF-8 path")
            return
        await self.on_playback_event(path)

    async def on_playback_event(self, path: str) -> None:
        target = self.index.resolve(self.group_id, path)
        if target is None:
            logger.warning("Ignoring playback of %r outside group %s", path, self.group_id)
            return
        logger.info("Playing %s", path)
        self.now_playing = path
        try:
            await self.player.load(str(target))
        except OSError as e:
            logger.warning("Player could not load %s: %s", target, e)
        if self.push_local is not None:
            await self.push_local(json.dumps({"playing": path}))
