"""Answers peers' "send me this clip" requests."""
import asyncio
import logging

from ..errors import BrokerError
from .broker import Message
from .library import LibraryIndex

logger = logging.getLogger(__name__)


class TransferService:
    def __init__(self, group_id: str, index: LibraryIndex):
        self.group_id = group_id
        self.index = index

    async def on_payload_request(self, msg: Message) -> None:
        """Reply with the raw file bytes, or stay silent if the clip is not held.

        The requester observes a timeout, never a negative reply.
        """
        try:
            path = msg.data.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Ignoring payload request with non-UTF-8 path")
            return
        data = await asyncio.to_thread(self.index.read, self.group_id, path)
        if data is None:
            logger.debug("Not holding %s, leaving request unanswered", path)
            return
        try:
            await msg.respond(data)
        except BrokerError as e:
            logger.warning("Could not serve %s: %s", path, e)
            return
        logger.info("Served %s (%d bytes)", path, len(data))
