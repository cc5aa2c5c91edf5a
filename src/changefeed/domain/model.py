"""Change notifications emitted for every write to the event store."""

import enum
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


class ChangeType(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeNotification:
    """Ordered signal that an event was written. Ordered within a partition only."""
    event_key: str
    change_type: ChangeType
    partition: str
    correlation_id: str
    received_at: datetime
    stream_position: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False)

    def at(self, position: str) -> "ChangeNotification":
        """Copy of this notification stamped with its stream position."""
        return ChangeNotification(
            event_key=self.event_key,
            change_type=self.change_type,
            partition=self.partition,
            correlation_id=self.correlation_id,
            received_at=self.received_at,
            stream_position=position,
            attributes=dict(self.attributes),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["change_type"] = self.change_type.value
        data["received_at"] = self.received_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeNotification":
        return cls(
            event_key=data["event_key"],
            change_type=ChangeType(data["change_type"]),
            partition=data["partition"],
            correlation_id=data["correlation_id"],
            received_at=datetime.fromisoformat(data["received_at"]),
            stream_position=data.get("stream_position"),
            attributes=dict(data.get("attributes") or {}),
        )

    def to_fields(self) -> Dict[str, str]:
        """Flat string fields for stream storage; position is assigned by the stream."""
        return {
            "event_key": self.event_key,
            "change_type": self.change_type.value,
            "partition": self.partition,
            "correlation_id": self.correlation_id,
            "received_at": self.received_at.isoformat(),
            "attributes": json.dumps(self.attributes),
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str], position: str) -> "ChangeNotification":
        return cls(
            event_key=fields["event_key"],
            change_type=ChangeType(fields["change_type"]),
            partition=fields["partition"],
            correlation_id=fields["correlation_id"],
            received_at=datetime.fromisoformat(fields["received_at"]),
            stream_position=position,
            attributes=json.loads(fields.get("attributes") or "{}"),
        )


def parse_position(position: str) -> Tuple[int, int]:
    """Split a ``<ms>-<seq>`` stream position into comparable integers."""
    ms, _, seq = position.partition("-")
    return int(ms), int(seq or 0)


def format_position(ms: int, seq: int) -> str:
    return f"{ms}-{seq}"


def next_position(position: str) -> str:
    """Smallest position strictly after the given one."""
    ms, seq = parse_position(position)
    return format_position(ms, seq + 1)
