import logging
from sqlalchemy import (
    JSON,
    Column,
    Index,
    Integer,
    String,
    Table,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import registry

from analytics.domain import model
from shared.adapters.orm import UTCDateTime

logger = logging.getLogger(__name__)

mapper_registry = registry()
metadata = mapper_registry.metadata

aggregate_records = Table(
    "aggregate_records",
    metadata,
    Column("aggregate_key", String(32), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
    Column("derived_fields", JSON, nullable=False),
    Column("updated_at", UTCDateTime),
    Column("version", Integer, nullable=False),
)

aggregate_applied_keys = Table(
    "aggregate_applied_keys",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_key", String(32), nullable=False),
    Column("idempotency_key", String(512), nullable=False),
    Column("applied_at", UTCDateTime, nullable=False),
    UniqueConstraint("aggregate_key", "idempotency_key", name="uq_aggregate_applied_keys"),
)

correlation_entries = Table(
    "correlation_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("correlation_id", String(255), nullable=False),
    Column("record_ref", String(512), nullable=False),
    Column("aggregate_key", String(32)),
    Column("received_at", UTCDateTime, nullable=False),
    Column("sequence_hint", Integer),
    UniqueConstraint("correlation_id", "record_ref", name="uq_correlation_entries_ref"),
    Index("ix_correlation_entries_timeline", "correlation_id", "received_at", "sequence_hint"),
)


def start_mappers():
    if inspect(model.AggregateRecord, raiseerr=False) is not None:
        return
    logger.info("Starting analytics mappers")
    mapper_registry.map_imperatively(
        model.AggregateRecord,
        aggregate_records,
        # UPDATE ... WHERE version = :expected; a lost race raises StaleDataError
        version_id_col=aggregate_records.c.version,
    )
    mapper_registry.map_imperatively(model.AppliedKey, aggregate_applied_keys)
    mapper_registry.map_imperatively(model.CorrelationEntry, correlation_entries)
    event.listen(model.AggregateRecord, "load", receive_load)


def receive_load(record, _):
    record.applied_keys = set()
    record.new_applied_keys = []
    record.events = []
