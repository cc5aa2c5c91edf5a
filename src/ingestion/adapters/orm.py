import logging
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Index,
    Integer,
    LargeBinary,
    String,
    Table,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import registry
from sqlalchemy.orm.attributes import get_history

from ingestion.domain import model
from shared.adapters.orm import UTCDateTime

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_key", String(512), unique=True, nullable=False),
    Column("partition", String(255), nullable=False),
    Column("correlation_id", String(255), nullable=False),
    Column("event_type", String(255), nullable=False, server_default=""),
    Column("delivery_id", String(255)),
    Column("payload", JSON, nullable=False),
    Column("raw_payload", LargeBinary, nullable=False),
    Column("source_signature", String(255), nullable=False),
    Column("received_at", UTCDateTime, nullable=False),
    Column("emitted_ms", BigInteger),
    UniqueConstraint("partition", "delivery_id", name="uq_events_partition_delivery"),
    Index("ix_events_partition_id", "partition", "id"),
    Index("ix_events_correlation", "correlation_id", "received_at"),
    Index("ix_events_partition_emitted", "partition", "emitted_ms"),
)


def start_mappers():
    if inspect(model.IngestedEvent, raiseerr=False) is not None:
        return
    logger.info("Starting ingestion mappers")
    mapper_registry.map_imperatively(
        model.IngestedEvent,
        events,
        properties={
            "sequence_hint": events.c.id,
        },
    )
    event.listen(model.IngestedEvent, "load", receive_load)
    event.listen(model.IngestedEvent, "before_update", reject_immutable_changes)


def receive_load(ingested_event, _):
    ingested_event.events = []


def reject_immutable_changes(mapper, connection, target):
    for name in model.IMMUTABLE_FIELDS:
        if get_history(target, name).has_changes():
            raise ValueError(f"IngestedEvent.{name} is immutable once persisted ({target.event_key})")
