"""
Unit tests for the sync engine: announcements, diffing and fetches.
"""
import asyncio
import json

from conftest import FakeBroker, add_clips
from yellboard.services.broker import Message
from yellboard.services.library import LibraryIndex, LibrarySnapshot
from yellboard.services.sync import SyncEngine, listing_topic, payload_topic
from yellboard.services.transfer import TransferService


def make_engine(broker, root, group="g", **kwargs):
    index = LibraryIndex(root)
    frames = []

    async def push_local(frame):
        frames.append(frame)

    engine = SyncEngine(group, index, broker, TransferService(group, index), push_local=push_local, **kwargs)
    return engine, frames


def listing(*paths):
    return Message("g.sounds", LibraryIndex.serialize(LibrarySnapshot.of(paths)))


class RecordingBroker(FakeBroker):
    """Answers every payload request with the requested path's bytes."""

    async def request(self, topic, data, timeout):
        self.requests.append((topic, data, timeout))
        return b"bytes of " + data


class TestTopics:
    def test_topic_names(self):
        assert listing_topic("g") == "g.sounds"
        assert payload_topic("g") == "g.sounds.payload"


class TestRemoteListing:
    """Tests for diffing remote announcements."""

    def test_fetches_every_missing_clip_with_default_timeout(self, tmp_path):
        async def scenario():
            broker = RecordingBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.on_remote_listing(listing("b.wav", "a.wav"))
            await engine.drain()
            return broker

        broker = asyncio.run(scenario())

        assert sorted(broker.requests) == [
            ("g.sounds.payload", b"a.wav", 90.0),
            ("g.sounds.payload", b"b.wav", 90.0),
        ]
        assert (tmp_path / "g" / "a.wav").read_bytes() == b"bytes of a.wav"
        assert (tmp_path / "g" / "b.wav").read_bytes() == b"bytes of b.wav"

    def test_nothing_missing_means_no_requests(self, tmp_path):
        add_clips(tmp_path / "g", "a.wav")

        async def scenario():
            broker = RecordingBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.broadcast()
            await engine.on_remote_listing(listing("a.wav"))
            await engine.drain()
            return broker

        assert asyncio.run(scenario()).requests == []

    def test_malformed_listing_is_dropped(self, tmp_path):
        async def scenario():
            broker = RecordingBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.on_remote_listing(Message("g.sounds", b"{broken"))
            await engine.drain()
            return broker, engine

        broker, engine = asyncio.run(scenario())

        assert broker.requests == []
        assert engine.local == LibrarySnapshot()

    def test_repeated_gap_is_fetched_again(self, tmp_path):
        async def scenario():
            broker = RecordingBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.on_remote_listing(listing("a.wav"))
            await engine.on_remote_listing(listing("a.wav"))
            await engine.drain()
            return broker

        assert len(asyncio.run(scenario()).requests) == 2

    def test_unsafe_names_are_not_requested(self, tmp_path):
        async def scenario():
            broker = RecordingBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.on_remote_listing(listing("../../etc/passwd", "ok.wav"))
            await engine.drain()
            return broker

        broker = asyncio.run(scenario())

        assert [data for _, data, _ in broker.requests] == [b"ok.wav"]
        assert not (tmp_path.parent / "etc").exists()

    def test_fan_out_is_bounded(self, tmp_path):
        peak = 0
        active = 0

        class SlowBroker(FakeBroker):
            async def request(self, topic, data, timeout):
                nonlocal peak, active
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return b"x"

        async def scenario():
            engine, _ = make_engine(SlowBroker(), tmp_path, max_fetches=2)
            await engine.on_remote_listing(listing(*[f"{i}.wav" for i in range(6)]))
            await engine.drain()

        asyncio.run(scenario())

        assert peak == 2
        assert len(list((tmp_path / "g").iterdir())) == 6


class TestRequestMissing:
    """Tests for single fetch attempts."""

    def test_timeout_leaves_clip_absent(self, tmp_path):
        async def scenario():
            broker = FakeBroker()
            engine, _ = make_engine(broker, tmp_path, fetch_timeout=0.05)
            return await engine.request_missing("a.wav")

        assert asyncio.run(scenario()) is False
        assert not (tmp_path / "g" / "a.wav").exists()


class TestBroadcast:
    """Tests for announcing the local listing."""

    def test_publishes_listing_and_pushes_frame(self, tmp_path):
        add_clips(tmp_path / "g", "b.wav", "A.wav")

        async def scenario():
            broker = FakeBroker()
            engine, frames = make_engine(broker, tmp_path)
            snapshot = await engine.broadcast()
            return broker, frames, snapshot, engine

        broker, frames, snapshot, engine = asyncio.run(scenario())

        assert broker.published == [("g.sounds", b'[{"path":"A.wav"},{"path":"b.wav"}]')]
        assert [json.loads(f) for f in frames] == [{"sounds": [{"Path": "A.wav"}, {"Path": "b.wav"}]}]
        assert engine.local == snapshot == LibrarySnapshot.of(["A.wav", "b.wav"])

    def test_self_receipt_is_a_no_op(self, tmp_path):
        add_clips(tmp_path / "g", "a.wav")

        async def scenario():
            broker = FakeBroker()
            engine, _ = make_engine(broker, tmp_path)
            handles = await engine.start()
            await broker.settle()
            await engine.drain()
            await engine.stop()
            for handle in handles:
                await handle.unsubscribe()
            return broker

        broker = asyncio.run(scenario())

        assert broker.requests == []
        assert broker.topics() == []

    def test_periodic_broadcast(self, tmp_path):
        async def scenario():
            broker = FakeBroker()
            engine, _ = make_engine(broker, tmp_path, interval=0.01)
            await engine.start()
            await asyncio.sleep(0.1)
            await engine.stop()
            return broker

        broker = asyncio.run(scenario())

        assert len([t for t, _ in broker.published if t == "g.sounds"]) >= 3


class TestConvergence:
    def test_two_peers_exchange_missing_clips(self, tmp_path):
        add_clips(tmp_path / "alice" / "g", "a.wav", content=b"AAAA")
        add_clips(tmp_path / "bob" / "g", "b.wav", content=b"BBBB")

        async def scenario():
            broker = FakeBroker()
            alice, _ = make_engine(broker, tmp_path / "alice")
            bob, _ = make_engine(broker, tmp_path / "bob")
            await alice.start()
            await bob.start()
            # Bob subscribed after Alice's first announcement; the next cycle reaches him.
            await alice.broadcast()
            await broker.settle()
            await alice.drain()
            await bob.drain()
            await alice.stop()
            await bob.stop()

        asyncio.run(scenario())

        for peer in ("alice", "bob"):
            assert (tmp_path / peer / "g" / "a.wav").read_bytes() == b"AAAA"
            assert (tmp_path / peer / "g" / "b.wav").read_bytes() == b"BBBB"


class TestStartStop:
    """Tests for session start ordering and shutdown."""

    def test_listing_during_startup_diffs_against_held_clips(self, tmp_path):
        add_clips(tmp_path / "g", "a.wav")

        class EagerBroker(RecordingBroker):
            # A peer's announcement arrives as soon as the listing topic is subscribed.
            async def subscribe(self, topic, handler):
                sub = await super().subscribe(topic, handler)
                if topic == "g.sounds":
                    await handler(listing("a.wav"))
                return sub

        async def scenario():
            broker = EagerBroker()
            engine, _ = make_engine(broker, tmp_path)
            await engine.start()
            await engine.drain()
            await engine.stop()
            return broker

        assert asyncio.run(scenario()).requests == []

    def test_stop_cancels_in_flight_fetches(self, tmp_path):
        class HangingBroker(FakeBroker):
            async def request(self, topic, data, timeout):
                await asyncio.sleep(60)

        async def scenario():
            engine, _ = make_engine(HangingBroker(), tmp_path)
            await engine.on_remote_listing(listing("a.wav", "b.wav"))
            await asyncio.sleep(0)
            await engine.stop()
            return engine

        engine = asyncio.run(scenario())

        assert engine.in_flight == 0
        assert not (tmp_path / "g" / "a.wav").exists()
