from dataclasses import dataclass
from typing import Any, Dict

from shared.domain.commands import Command


@dataclass
class ApplyChange(Command):
    """Fold the event behind a routed change notification into its aggregate."""
    message_id: str
    idempotency_key: str
    notification: Dict[str, Any]


@dataclass
class RebuildCorrelation(Command):
    correlation_id: str
