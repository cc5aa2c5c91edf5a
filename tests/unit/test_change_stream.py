"""Unit tests for change stream adapters and checkpoints."""

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from changefeed.adapters.stream import (
    InMemoryChangeStream,
    InMemoryCheckpointStore,
    RedisChangeStream,
    RedisCheckpointStore,
)
from changefeed.domain.model import ChangeNotification, ChangeType, next_position, parse_position
from shared.domain.errors import PositionExpired

RECEIVED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def notification(n, partition="github"):
    return ChangeNotification(
        event_key=f"{partition}/c-{n}/k-{n}",
        change_type=ChangeType.ADDED,
        partition=partition,
        correlation_id=f"c-{n}",
        received_at=RECEIVED_AT,
        attributes={"event_type": "query", "sequence_hint": n},
    )


class SteppingClock:
    def __init__(self, start=1_714_564_800.0):
        self.now = start

    def __call__(self):
        return self.now


class TestPositions:

    def test_parse_and_next(self):
        assert parse_position("1714564800000-3") == (1714564800000, 3)
        assert next_position("1714564800000-3") == "1714564800000-4"


class TestInMemoryChangeStream:

    def test_preserves_order_within_partition(self):
        stream = InMemoryChangeStream()
        for n in range(5):
            stream.append(notification(n))

        keys = [c.event_key for c in stream.read("github")]

        assert keys == [notification(n).event_key for n in range(5)]

    def test_positions_increase_within_same_millisecond(self):
        stream = InMemoryChangeStream(clock=SteppingClock())

        positions = [stream.append(notification(n)) for n in range(3)]

        assert positions == ["1714564800000-0", "1714564800000-1", "1714564800000-2"]

    def test_read_after_position_resumes_exactly(self):
        stream = InMemoryChangeStream()
        positions = [stream.append(notification(n)) for n in range(4)]

        resumed = stream.read("github", after=positions[1])

        assert [c.stream_position for c in resumed] == positions[2:]

    def test_changes_generator_is_restartable(self):
        stream = InMemoryChangeStream()
        for n in range(5):
            stream.append(notification(n))

        consumed = []
        for change in stream.changes("github", batch_size=2):
            consumed.append(change)
            if len(consumed) == 3:
                break
        rest = list(stream.changes("github", after=consumed[-1].stream_position, batch_size=2))

        assert [c.event_key for c in consumed + rest] == [notification(n).event_key for n in range(5)]

    def test_dollar_starts_from_now(self):
        stream = InMemoryChangeStream()
        stream.append(notification(0))

        assert list(stream.changes("github", after="$")) == []

    def test_partitions_are_independent(self):
        stream = InMemoryChangeStream()
        stream.append(notification(0, partition="github"))
        stream.append(notification(1, partition="gitlab"))

        assert stream.partitions() == ["github", "gitlab"]
        assert [c.partition for c in stream.read("gitlab")] == ["gitlab"]

    def test_expired_position_raises(self):
        clock = SteppingClock()
        stream = InMemoryChangeStream(retention=timedelta(hours=24), clock=clock)
        old = stream.append(notification(0))

        clock.now += 25 * 3600

        with pytest.raises(PositionExpired) as excinfo:
            stream.read("github", after=old)
        assert excinfo.value.partition == "github"
        assert excinfo.value.position == old

    def test_trim_drops_entries_outside_retention(self):
        clock = SteppingClock()
        stream = InMemoryChangeStream(retention=timedelta(hours=1), clock=clock)
        stream.append(notification(0))
        clock.now += 2 * 3600
        stream.append(notification(1))

        assert [c.event_key for c in stream.read("github")] == [notification(1).event_key]

    def test_latest_position_of_empty_partition(self):
        assert InMemoryChangeStream().latest_position("github") == "0-0"


class TestRedisChangeStream:

    @pytest.fixture
    def stream(self):
        return RedisChangeStream(client=fakeredis.FakeRedis(), prefix="changes")

    def test_round_trips_notifications_in_order(self, stream):
        positions = [stream.append(notification(n)) for n in range(3)]

        read = stream.read("github")

        assert [c.stream_position for c in read] == positions
        assert read[0].event_key == notification(0).event_key
        assert read[0].received_at == RECEIVED_AT
        assert read[0].attributes == {"event_type": "query", "sequence_hint": 0}
        assert read[0].change_type == ChangeType.ADDED

    def test_read_after_position(self, stream):
        positions = [stream.append(notification(n)) for n in range(3)]

        assert [c.stream_position for c in stream.read("github", after=positions[0])] == positions[1:]

    def test_latest_position_and_partitions(self, stream):
        stream.append(notification(0, partition="github"))
        last = stream.append(notification(1, partition="gitlab"))

        assert stream.latest_position("gitlab") == last
        assert stream.latest_position("bitbucket") == "0-0"
        assert stream.partitions() == ["github", "gitlab"]


class TestCheckpointStores:

    @pytest.mark.parametrize("store", [
        InMemoryCheckpointStore(),
        RedisCheckpointStore(fakeredis.FakeRedis(), prefix="checkpoints"),
    ])
    def test_save_and_get(self, store):
        assert store.get("event-router", "github") is None

        store.save("event-router", "github", "1714564800000-1")

        assert store.get("event-router", "github") == "1714564800000-1"
        assert store.get("other-consumer", "github") is None
