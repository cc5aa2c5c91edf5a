"""
Views for read operations - separate from command/write path.
"""
from typing import Any, Dict, List, Optional

from analytics.domain.model import AggregateRecord, CorrelationEntry
from analytics.service_layer import correlation
from analytics.service_layer.unit_of_work import AbstractAnalyticsUnitOfWork
from queueing.domain.model import QueuedMessage


def _isoformat(value):
    return value.isoformat() if value else None


def serialize_aggregate(record: AggregateRecord) -> Dict[str, Any]:
    return {
        "aggregate_key": record.aggregate_key,
        "count": record.count,
        "derived_fields": record.derived_fields,
        "updated_at": _isoformat(record.updated_at),
        "version": getattr(record, "version", None),
    }


def serialize_entry(entry: CorrelationEntry) -> Dict[str, Any]:
    return {
        "record_ref": entry.record_ref,
        "aggregate_key": entry.aggregate_key,
        "received_at": _isoformat(entry.received_at),
        "sequence_hint": entry.sequence_hint,
    }


def serialize_dead_letter(message: QueuedMessage) -> Dict[str, Any]:
    return {
        "message_id": message.message_id,
        "source_queue": message.source_queue,
        "receive_count": message.receive_count,
        "last_error": message.last_error,
        "dead_lettered_at": _isoformat(message.dead_lettered_at),
        "enqueued_at": _isoformat(message.enqueued_at),
        "body": message.body,
    }


def list_aggregates(uow: AbstractAnalyticsUnitOfWork, limit: int = 100) -> List[Dict[str, Any]]:
    """Most recent aggregates first."""
    with uow:
        return [serialize_aggregate(r) for r in uow.aggregates.list(limit)]


def get_aggregate(aggregate_key: str, uow: AbstractAnalyticsUnitOfWork) -> Optional[Dict[str, Any]]:
    with uow:
        record = uow.aggregates.get(aggregate_key)
        return serialize_aggregate(record) if record else None


def get_timeline(correlation_id: str, uow: AbstractAnalyticsUnitOfWork) -> List[Dict[str, Any]]:
    return [serialize_entry(e) for e in correlation.timeline(uow, correlation_id)]
