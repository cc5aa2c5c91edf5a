"""Event router: fans change notifications out to durable queues."""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

import config
from changefeed.domain.model import ChangeNotification
from changefeed.domain.rules import RoutingRule, load_rules
from queueing.service_layer.queue import DurableQueue
from shared.domain.errors import RoutingMiss

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedMessage:
    queue_name: str
    message_id: str


class EventRouter:
    """
    Applies routing rules to notifications and enqueues them.

    A notification goes to the union of the destinations of every matching
    rule, once per queue. Notifications matching no rule are dropped and
    logged; that is not an error. The router never waits for consumers.
    """

    def __init__(self, rules: List[RoutingRule], queue_factory: Callable[[str], DurableQueue]):
        self.rules = rules
        self._queue_factory = queue_factory
        self._queues = {}  # type: Dict[str, DurableQueue]

    @classmethod
    def from_config(cls, queue_factory: Callable[[str], DurableQueue]) -> "EventRouter":
        return cls(load_rules(config.get_routing_rules()), queue_factory)

    def queue(self, name: str) -> DurableQueue:
        if name not in self._queues:
            self._queues[name] = self._queue_factory(name)
        return self._queues[name]

    def route(self, notification: ChangeNotification) -> Set[RoutedMessage]:
        document = notification.to_dict()

        destinations = {}  # type: Dict[str, Optional[str]]
        for rule in self.rules:
            if rule.matches(document):
                group_key = rule.group_key_for(document)
                for destination in rule.destinations:
                    destinations.setdefault(destination, group_key)

        if not destinations:
            miss = RoutingMiss(
                event_key=notification.event_key,
                partition=notification.partition,
                stream_position=notification.stream_position,
            )
            logger.info(f"Routing miss, dropping notification: {miss}")
            return set()

        routed = set()
        for queue_name, group_key in destinations.items():
            # The event key dedups re-routed notifications within the queue's dedup window
            message_id = self.queue(queue_name).enqueue(
                document,
                group_key=group_key,
                dedup_id=notification.event_key,
            )
            routed.add(RoutedMessage(queue_name=queue_name, message_id=message_id))

        logger.info(f"Routed {notification.event_key} to {sorted(destinations)}")
        return routed
