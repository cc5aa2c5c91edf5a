"""Domain model for ingested webhook events."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ingestion.domain.events import EventStored

# Fields that must never change once an event is persisted
IMMUTABLE_FIELDS = ("correlation_id", "received_at", "sequence_hint")


@dataclass(eq=False)
class IngestedEvent:
    """
    Immutable record of an external occurrence.

    ``sequence_hint`` is assigned by the event store on insert and breaks
    ties between events sharing a ``received_at`` timestamp. ``emitted_ms``
    is the only mutable column: the stream time of the last change
    notification emitted for the event, or None while none has been.
    """
    event_key: str
    partition: str
    correlation_id: str
    payload: Dict[str, Any]
    raw_payload: bytes
    received_at: datetime
    source_signature: str
    event_type: str = ""
    delivery_id: Optional[str] = None
    sequence_hint: Optional[int] = None
    emitted_ms: Optional[int] = None
    events: List = field(default_factory=list, repr=False)

    def __eq__(self, other):
        if not isinstance(other, IngestedEvent):
            return False
        return other.event_key == self.event_key

    def __hash__(self):
        return hash(self.event_key)

    @classmethod
    def create(
        cls,
        partition: str,
        payload: Dict[str, Any],
        raw_payload: bytes,
        signature: str,
        received_at: datetime,
        correlation_paths: Sequence[str],
        delivery_id: Optional[str] = None,
    ) -> "IngestedEvent":
        correlation_id = extract_correlation_id(payload, correlation_paths) or str(uuid.uuid4())
        return cls(
            event_key=make_event_key(partition, correlation_id, received_at),
            partition=partition,
            correlation_id=correlation_id,
            payload=payload,
            raw_payload=raw_payload,
            received_at=received_at,
            source_signature=signature,
            event_type=extract_event_type(payload),
            delivery_id=delivery_id,
        )

    def mark_stored(self) -> None:
        """
        Raise EventStored once the write is durable.

        Called after commit only, so no change is captured for a write that
        never happened.
        """
        self.events.append(
            EventStored(
                event_key=self.event_key,
                partition=self.partition,
                correlation_id=self.correlation_id,
                received_at=self.received_at,
                sequence_hint=self.sequence_hint,
                event_type=self.event_type,
            )
        )

    def mark_emitted(self, position_ms: int) -> None:
        """Record the stream time of the latest change notification for this event."""
        self.emitted_ms = position_ms


def make_event_key(partition: str, correlation_id: str, received_at: datetime) -> str:
    """Build ``partition/correlationId/receivedAt-suffix``; the suffix keeps same-instant writes apart."""
    stamp = received_at.strftime("%Y%m%dT%H%M%S%fZ")
    return f"{partition}/{correlation_id}/{stamp}-{uuid.uuid4().hex[:8]}"


def lookup_path(document: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``issue.number`` inside nested dicts."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def extract_correlation_id(payload: Dict[str, Any], paths: Sequence[str]) -> Optional[str]:
    for path in paths:
        value = lookup_path(payload, path)
        if value is None or isinstance(value, (dict, list)) or value == "":
            continue
        return str(value)
    return None


def extract_event_type(payload: Dict[str, Any]) -> str:
    for key in ("eventType", "event_type", "type", "action"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return "unknown"
