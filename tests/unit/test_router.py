"""Unit tests for routing rules and the event router."""

import logging
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from changefeed.domain.model import ChangeNotification, ChangeType
from changefeed.domain.rules import FieldMatch, RoutingRule, load_rules
from changefeed.service_layer.router import EventRouter, RoutedMessage

RECEIVED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def notification(event_type="query", change_type=ChangeType.ADDED, partition="cv-assistant"):
    return ChangeNotification(
        event_key=f"{partition}/r-1/20240501T120000000000Z-abcd1234",
        change_type=change_type,
        partition=partition,
        correlation_id="r-1",
        received_at=RECEIVED_AT,
        stream_position="1714564800000-0",
        attributes={"event_type": event_type, "source": partition, "sequence_hint": 1},
    )


class FakeQueue:
    def __init__(self, name):
        self.name = name
        self.enqueued = []

    def enqueue(self, body, group_key=None, dedup_id=None):
        self.enqueued.append((body, group_key, dedup_id))
        return f"{self.name}-msg-{len(self.enqueued)}"


@pytest.fixture
def queues():
    return {}


@pytest.fixture
def queue_factory(queues):
    def _factory(name):
        queues[name] = FakeQueue(name)
        return queues[name]
    return _factory


class TestFieldMatch:

    def test_equals(self):
        match = FieldMatch(field="attributes.event_type", equals="query")

        assert match.matches({"attributes": {"event_type": "query"}})
        assert not match.matches({"attributes": {"event_type": "response"}})
        assert not match.matches({})

    def test_equals_none_is_a_real_condition(self):
        match = FieldMatch(field="attributes.delivery", equals=None)

        assert match.matches({"attributes": {"delivery": None}})
        assert not match.matches({"attributes": {}})

    def test_prefix_any_of_and_exists(self):
        document = {"partition": "github-enterprise", "attributes": {"event_type": "opened"}}

        assert FieldMatch(field="partition", prefix="github").matches(document)
        assert FieldMatch(field="attributes.event_type", any_of=["opened", "closed"]).matches(document)
        assert FieldMatch(field="attributes.missing", exists=False).matches(document)
        assert not FieldMatch(field="partition", exists=False).matches(document)

    def test_requires_a_condition(self):
        with pytest.raises(ValidationError):
            FieldMatch(field="partition")


class TestRoutingRule:

    def test_all_conditions_must_hold(self):
        rule = RoutingRule(
            name="responses",
            destinations=["scores"],
            match=[
                {"field": "change_type", "equals": "added"},
                {"field": "attributes.event_type", "equals": "response"},
            ],
        )

        assert rule.matches(notification("response").to_dict())
        assert not rule.matches(notification("query").to_dict())

    def test_needs_a_destination(self):
        with pytest.raises(ValidationError):
            RoutingRule(name="nowhere", destinations=[])

    def test_group_key(self):
        rule = RoutingRule(name="r", destinations=["q"], group_by="correlation_id")

        assert rule.group_key_for(notification().to_dict()) == "r-1"
        assert RoutingRule(name="r", destinations=["q"]).group_key_for({}) is None


class TestEventRouter:

    def test_routes_to_every_matching_destination(self, queue_factory, queues):
        router = EventRouter(
            load_rules([
                {"name": "all", "destinations": ["aggregates"]},
                {"name": "queries", "destinations": ["search", "aggregates"],
                 "match": [{"field": "attributes.event_type", "equals": "query"}]},
            ]),
            queue_factory,
        )

        routed = router.route(notification("query"))

        assert routed == {
            RoutedMessage(queue_name="aggregates", message_id="aggregates-msg-1"),
            RoutedMessage(queue_name="search", message_id="search-msg-1"),
        }
        assert len(queues["aggregates"].enqueued) == 1

    def test_enqueues_notification_with_event_key_as_dedup_id(self, queue_factory, queues):
        router = EventRouter(
            load_rules([{"name": "all", "destinations": ["aggregates"], "group_by": "correlation_id"}]),
            queue_factory,
        )
        change = notification()

        router.route(change)

        [(body, group_key, dedup_id)] = queues["aggregates"].enqueued
        assert body == change.to_dict()
        assert group_key == "r-1"
        assert dedup_id == change.event_key

    def test_routing_miss_is_logged_and_dropped(self, queue_factory, queues, caplog):
        router = EventRouter(
            load_rules([{"name": "removals", "destinations": ["audit"],
                         "match": [{"field": "change_type", "equals": "removed"}]}]),
            queue_factory,
        )

        with caplog.at_level(logging.INFO, logger="changefeed.service_layer.router"):
            routed = router.route(notification())

        assert routed == set()
        assert queues == {}
        assert "Routing miss" in caplog.text

    def test_reuses_queue_instances(self):
        factory = Mock(side_effect=FakeQueue)
        router = EventRouter(load_rules([{"name": "all", "destinations": ["aggregates"]}]), factory)

        router.route(notification())
        router.route(notification())

        factory.assert_called_once_with("aggregates")

    def test_default_rules_route_added_events_to_aggregates(self, queue_factory, queues):
        router = EventRouter.from_config(queue_factory)

        router.route(notification())
        router.route(notification(change_type=ChangeType.REMOVED))

        assert len(queues["analytics-aggregates"].enqueued) == 1
