"""Domain events for the ingestion service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.domain.commands import Event


@dataclass
class EventStored(Event):
    """Raised when a webhook event has been durably written to the event store."""
    event_key: str
    partition: str
    correlation_id: str
    received_at: datetime
    sequence_hint: Optional[int]
    event_type: str = ""
