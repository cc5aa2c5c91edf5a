"""
Real-time aggregate updates.

Batch workers publish every AggregateUpdated to a Redis channel. The
analytics API bridges that channel into an in-process RealtimePublisher,
which fans updates out to subscribers such as open websockets. A new
subscriber first receives a bounded snapshot of recent updates, then live
ones.
"""

import abc
import itertools
import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

import redis

from analytics.domain.events import AggregateUpdated
from shared.adapters import redis_adapter

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class AbstractNotifier(abc.ABC):
    @abc.abstractmethod
    def notify(self, update: Any):
        raise NotImplementedError


class RedisNotifier(AbstractNotifier):
    """Publishes aggregate updates to a Redis pub/sub channel."""

    def __init__(self, channel: str, client: Optional[redis.Redis] = None):
        self.channel = channel
        self.client = client

    def notify(self, update: AggregateUpdated):
        redis_adapter.publish(self.channel, update, client=self.client)


@dataclass(eq=False)
class Subscription:
    subscription_id: int
    listener: Listener = field(repr=False)
    active: bool = True


class RealtimePublisher(AbstractNotifier):
    """In-process fan-out of updates to subscribers."""

    def __init__(self, snapshot_size: int = 20):
        self.snapshot_size = snapshot_size
        self._recent = deque(maxlen=snapshot_size)  # type: Deque[Any]
        self._subscriptions = {}  # type: Dict[int, Subscription]
        self._ids = itertools.count(1)
        # Reentrant so a listener may unsubscribe itself during delivery
        self._lock = threading.RLock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, listener: Listener) -> Subscription:
        """
        Register a listener.

        The listener is called with every update in the current snapshot,
        oldest first, before any live update, and nothing is missed between
        the two.
        """
        with self._lock:
            subscription = Subscription(subscription_id=next(self._ids), listener=listener)
            self._subscriptions[subscription.subscription_id] = subscription
            for update in list(self._recent):
                self._deliver(subscription, update)
        logger.debug(f"Subscription {subscription.subscription_id} opened")
        return subscription

    def notify(self, update: Any):
        with self._lock:
            self._recent.append(update)
            for subscription in list(self._subscriptions.values()):
                self._deliver(subscription, update)

    def unsubscribe(self, subscription: Subscription):
        """Stop deliveries to this subscription. Safe to call more than once."""
        with self._lock:
            self._subscriptions.pop(subscription.subscription_id, None)
            subscription.active = False

    def _deliver(self, subscription: Subscription, update: Any):
        if not subscription.active:
            return
        try:
            subscription.listener(update)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Listener for subscription %s failed", subscription.subscription_id)


class RedisBridge:
    """Relays a Redis pub/sub channel into a RealtimePublisher on a background thread."""

    def __init__(self, client: redis.Redis, channel: str, publisher: RealtimePublisher):
        self.client = client
        self.channel = channel
        self.publisher = publisher
        self._pubsub = None
        self._thread = None

    def handle_message(self, message: Dict[str, Any]):
        try:
            update = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.error("Dropping undecodable message on %s", self.channel)
            return
        self.publisher.notify(update)

    def start(self):
        self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: self.handle_message})
        self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info(f"Bridging Redis channel {self.channel} to live subscribers")

    def stop(self):
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
