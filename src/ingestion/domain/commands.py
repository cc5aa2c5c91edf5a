"""Commands for the ingestion service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shared.domain.commands import Command
from ingestion.adapters.signature import VerifiedEvent


@dataclass
class IngestWebhook(Command):
    """Command to durably store a verified webhook event."""
    source: str
    verified: VerifiedEvent
    delivery_id: Optional[str] = None
    received_at: Optional[datetime] = None  # defaults to the time of the write


@dataclass
class ResyncChanges(Command):
    """Command to re-emit change notifications for stored events of a partition."""
    partition: str
    after_sequence: int = 0
    after_position: Optional[str] = None  # last stream position the consumer routed


@dataclass
class EmitPendingChanges(Command):
    """Command to emit change notifications for stored events that have none yet."""
    partition: Optional[str] = None  # every partition with pending events
