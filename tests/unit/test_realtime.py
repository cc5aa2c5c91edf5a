"""Unit tests for live aggregate update fan-out."""

import json
from datetime import datetime, timezone

import fakeredis

from analytics.adapters.realtime import RealtimePublisher, RedisBridge, RedisNotifier
from analytics.domain.events import AggregateUpdated

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def update(count):
    return AggregateUpdated(
        aggregate_key="2024-05-01",
        count=count,
        derived_fields={"events_by_type": {"query": count}},
        idempotency_key=f"k-{count}",
        correlation_id="r-1",
        record_ref=f"cv-assistant/r-1/k-{count}",
        received_at=NOW,
        sequence_hint=count,
        updated_at=NOW,
    )


class TestRealtimePublisher:

    def test_snapshot_then_live_updates(self):
        publisher = RealtimePublisher()
        publisher.notify(update(1))
        publisher.notify(update(2))
        received = []

        publisher.subscribe(received.append)
        publisher.notify(update(3))

        assert [u.count for u in received] == [1, 2, 3]

    def test_snapshot_is_bounded(self):
        publisher = RealtimePublisher(snapshot_size=2)
        for n in range(1, 6):
            publisher.notify(update(n))
        received = []

        publisher.subscribe(received.append)

        assert [u.count for u in received] == [4, 5]

    def test_unsubscribe_stops_delivery_and_is_idempotent(self):
        publisher = RealtimePublisher()
        received = []
        subscription = publisher.subscribe(received.append)

        publisher.unsubscribe(subscription)
        publisher.unsubscribe(subscription)
        publisher.notify(update(1))

        assert received == []
        assert publisher.subscriber_count == 0

    def test_failing_listener_does_not_affect_others(self):
        publisher = RealtimePublisher()
        received = []

        def broken(_):
            raise RuntimeError("socket closed")

        publisher.subscribe(broken)
        publisher.subscribe(received.append)
        publisher.notify(update(1))

        assert [u.count for u in received] == [1]

    def test_listener_may_unsubscribe_itself(self):
        publisher = RealtimePublisher()
        received = []
        subscription = None

        def once(u):
            received.append(u)
            publisher.unsubscribe(subscription)

        subscription = publisher.subscribe(once)
        publisher.notify(update(1))
        publisher.notify(update(2))

        assert [u.count for u in received] == [1]


class TestRedis:

    def test_notifier_publishes_json(self):
        client = fakeredis.FakeRedis()
        pubsub = client.pubsub()
        pubsub.subscribe("analytics:aggregates")

        RedisNotifier("analytics:aggregates", client=client).notify(update(1))

        messages = [pubsub.get_message(timeout=1) for _ in range(2)]
        [message] = [m for m in messages if m and m["type"] == "message"]
        payload = json.loads(message["data"])
        assert payload["event_type"] == "AggregateUpdated"
        assert payload["count"] == 1
        assert payload["received_at"] == NOW.isoformat()

    def test_bridge_relays_decoded_updates(self):
        publisher = RealtimePublisher()
        received = []
        publisher.subscribe(received.append)
        bridge = RedisBridge(fakeredis.FakeRedis(), "analytics:aggregates", publisher)

        bridge.handle_message({"type": "message", "data": b'{"aggregate_key": "2024-05-01", "count": 3}'})
        bridge.handle_message({"type": "message", "data": b"not json"})

        assert received == [{"aggregate_key": "2024-05-01", "count": 3}]
