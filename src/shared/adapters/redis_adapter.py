"""Redis adapter for publishing events following Cosmic Python pattern."""

import json
import logging
from dataclasses import asdict
from datetime import datetime

import redis

from config import get_redis_host_and_port
from shared.domain.commands import Event

logger = logging.getLogger(__name__)

r = redis.Redis(**get_redis_host_and_port())


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_event(event: Event) -> str:
    """Serialize event to JSON, handling datetime objects at any depth."""
    event_dict = asdict(event)
    event_dict["event_type"] = type(event).__name__
    return json.dumps(event_dict, default=_json_default)


def publish(channel: str, event: Event, client=None):
    """Publish event to Redis channel."""
    logger.info("publishing: channel=%s, event=%s", channel, type(event).__name__)
    message = serialize_event(event)
    (client or r).publish(channel, message)
