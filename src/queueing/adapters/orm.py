import logging
from sqlalchemy import (
    JSON,
    Column,
    Index,
    Integer,
    String,
    Table,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import registry
from sqlalchemy.orm.attributes import get_history

from queueing.domain import model
from shared.adapters.orm import UTCDateTime

logger = logging.getLogger(__name__)

mapper_registry = registry()
metadata = mapper_registry.metadata

queue_messages = Table(
    "queue_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", String(36), unique=True, nullable=False),
    Column("queue_name", String(255), nullable=False),
    Column("body", JSON, nullable=False),
    Column("group_key", String(255)),
    Column("dedup_id", String(512)),
    Column("receive_count", Integer, nullable=False, default=0),
    Column("state", String(32), nullable=False),
    Column("visible_after", UTCDateTime, nullable=False),
    Column("enqueued_at", UTCDateTime, nullable=False),
    Column("last_error", Text),
    Column("source_queue", String(255)),
    Column("dead_lettered_at", UTCDateTime),
    # Bumped on every UPDATE; a concurrent receiver losing the race gets StaleDataError
    Column("version", Integer, nullable=False),
    Index("ix_queue_messages_delivery", "queue_name", "state", "visible_after", "id"),
    Index("ix_queue_messages_dedup", "queue_name", "dedup_id", "enqueued_at"),
)


def start_mappers():
    if inspect(model.QueuedMessage, raiseerr=False) is not None:
        return
    logger.info("Starting queueing mappers")
    mapper_registry.map_imperatively(
        model.QueuedMessage,
        queue_messages,
        properties={
            "sequence": queue_messages.c.id,
        },
        version_id_col=queue_messages.c.version,
    )
    event.listen(model.QueuedMessage, "before_update", reject_body_changes)


def reject_body_changes(mapper, connection, target):
    if get_history(target, "body").has_changes():
        raise ValueError(f"Queued message body is immutable ({target.message_id})")
