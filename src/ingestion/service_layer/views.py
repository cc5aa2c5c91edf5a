"""
Views for read operations - separate from command/write path.
Following Cosmic Python pattern: views bypass the domain model for reads.
"""
import logging
from typing import Any, Dict, List, Optional

from ingestion.domain.model import IngestedEvent
from ingestion.service_layer.unit_of_work import AbstractIngestionUnitOfWork

logger = logging.getLogger(__name__)


def serialize_event(ingested: IngestedEvent) -> Dict[str, Any]:
    return {
        "event_key": ingested.event_key,
        "partition": ingested.partition,
        "correlation_id": ingested.correlation_id,
        "event_type": ingested.event_type,
        "payload": ingested.payload,
        "received_at": ingested.received_at.isoformat(),
        "sequence_hint": ingested.sequence_hint,
    }


def get_event(event_key: str, uow: AbstractIngestionUnitOfWork) -> Optional[Dict[str, Any]]:
    """Retrieve a stored event by key. Raw bytes and signature are not exposed."""
    with uow:
        ingested = uow.events.get(event_key)
        return serialize_event(ingested) if ingested else None


def list_correlation_events(correlation_id: str, uow: AbstractIngestionUnitOfWork) -> List[Dict[str, Any]]:
    """All stored events for a correlation key, oldest first."""
    with uow:
        return [serialize_event(e) for e in uow.events.list_for_correlation(correlation_id)]
