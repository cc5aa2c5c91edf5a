from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from shared.domain.commands import Event


@dataclass
class AggregateUpdated(Event):
    """An aggregate absorbed one more change. Carries the new totals for live subscribers."""
    aggregate_key: str
    count: int
    derived_fields: Dict[str, Any]
    idempotency_key: str
    correlation_id: str
    record_ref: str
    received_at: datetime
    sequence_hint: Optional[int] = None
    updated_at: Optional[datetime] = None
