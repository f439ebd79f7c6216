"""Library synchronization for one group.

Every peer announces its listing on ``<group>.sounds``. A peer receiving an
announcement diffs it against its own holdings and requests each missing clip
on ``<group>.sounds.payload``; whoever holds the clip answers with its bytes.
Convergence is eventual: a failed fetch is retried only when a later
broadcast exposes the same gap again.
"""
import asyncio
import logging
from collections import Counter
from typing import Awaitable, Callable

from ..errors import BrokerError, SerializationError, TransferError
from .broker import Message, MessageBroker, Subscription
from .library import LibraryIndex, LibrarySnapshot, missing
from .transfer import TransferService

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60.0
DEFAULT_FETCH_TIMEOUT = 90.0
DEFAULT_MAX_FETCHES = 8


def listing_topic(group_id: str) -> str:
    return f"{group_id}.sounds"


def payload_topic(group_id: str) -> str:
    return f"{group_id}.sounds.payload"


class SyncEngine:
    def __init__(
        self,
        group_id: str,
        index: LibraryIndex,
        broker: MessageBroker,
        transfer: TransferService,
        push_local: Callable[[str], Awaitable[None]] | None = None,
        interval: float = DEFAULT_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        max_fetches: int = DEFAULT_MAX_FETCHES,
    ):
        self.group_id = group_id
        self.index = index
        self.broker = broker
        self.transfer = transfer
        self.push_local = push_local
        self.interval = interval
        self.fetch_timeout = fetch_timeout
        self.local = LibrarySnapshot()
        self._fetch_slots = asyncio.Semaphore(max_fetches)
        self._fetches: set[asyncio.Task] = set()
        self._in_flight: Counter = Counter()
        self._timer: asyncio.Task | None = None

    @property
    def in_flight(self) -> int:
        return len(self._fetches)

    async def start(self) -> list[Subscription]:
        """Subscribe to both group topics, broadcast once, then keep broadcasting.

        Returns the subscription handles; the caller owns their release.
        """
        # Seed the local view so listings arriving before the first broadcast diff correctly.
        self.local = await asyncio.to_thread(self.index.scan, self.group_id)
        handles = []
        try:
            handles.append(
                await self.broker.subscribe(listing_topic(self.group_id), self.on_remote_listing)
            )
            handles.append(
                await self.broker.subscribe(payload_topic(self.group_id), self.transfer.on_payload_request)
            )
        except BrokerError:
            for handle in handles:
                await handle.unsubscribe()
            raise
        await self.broadcast()
        self._timer = asyncio.create_task(self._broadcast_loop())
        return handles

    async def stop(self) -> None:
        """Cancel the periodic broadcast and any in-flight fetches."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        for task in list(self._fetches):
            task.cancel()
        await self.drain()

    async def drain(self) -> None:
        """Wait until no fetch is in flight."""
        while self._fetches:
            await asyncio.gather(*list(self._fetches), return_exceptions=True)

    async def _broadcast_loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.broadcast()
            except Exception:
                logger.exception("Periodic broadcast failed")

    async def broadcast(self) -> LibrarySnapshot:
        """Rescan, announce on the listing topic and refresh local clients."""
        snapshot = await asyncio.to_thread(self.index.scan, self.group_id)
        self.local = snapshot
        try:
            await self.broker.publish(listing_topic(self.group_id), self.index.serialize(snapshot))
        except BrokerError as e:
            logger.warning("Could not announce listing: %s", e)
        if self.push_local is not None:
            await self.push_local(self.index.listing_frame(snapshot))
        logger.debug("Announced %d clips for %s", len(snapshot), self.group_id)
        return snapshot

    async def on_remote_listing(self, msg: Message) -> None:
        try:
            remote = self.index.deserialize(msg.data)
        except SerializationError as e:
            logger.warning("Dropping malformed listing: %s", e)
            return
        gap = missing(self.local, remote)
        if not gap:
            return
        logger.info("Fetching %d missing clips", len(gap))
        for entry in gap.ordered():
            self._spawn_fetch(entry.path)

    def _spawn_fetch(self, path: str) -> None:
        # No deduplication: a gap seen twice is fetched twice.
        if self._in_flight[path]:
            logger.debug("%s already being fetched, requesting again", path)
        self._in_flight[path] += 1
        task = asyncio.create_task(self._fetch(path))
        self._fetches.add(task)
        task.add_done_callback(lambda t: self._fetch_done(t, path))

    def _fetch_done(self, task: asyncio.Task, path: str) -> None:
        self._fetches.discard(task)
        self._in_flight[path] -= 1
        if self._in_flight[path] <= 0:
            del self._in_flight[path]

    async def _fetch(self, path: str) -> None:
        async with self._fetch_slots:
            await self.request_missing(path)

    async def request_missing(self, path: str) -> bool:
        """Fetch one clip from whichever peer answers first. Single attempt."""
        if self.index.resolve(self.group_id, path) is None:
            logger.warning("Ignoring announced clip with unsafe name %r", path)
            return False
        try:
            data = await self.broker.request(
                payload_topic(self.group_id), path.encode("utf-8"), timeout=self.fetch_timeout
            )
        except (TransferError, BrokerError) as e:
            logger.warning("Could not fetch %s: %s", path, e)
            return False
        try:
            await asyncio.to_thread(self.index.write, self.group_id, path, data)
        except (OSError, ValueError) as e:
            logger.warning("Could not store %s: %s", path, e)
            return False
        logger.info("Fetched %s (%d bytes)", path, len(data))
        return True
