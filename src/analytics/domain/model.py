"""
Analytics domain model.

AggregateRecord is the only shared mutable state in the pipeline. Every
mutation goes through ``apply``, which is gated on the message's
idempotency key, so redelivered messages leave the totals unchanged. Each
applied key is kept as an AppliedKey row, unique per aggregate, written in
the same transaction as the totals. Concurrent writers are serialised by
the store's version column, never by locks held across stages.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from analytics.domain.events import AggregateUpdated

MATCH_TYPES = ("full", "partial", "none")


def aggregate_key_for(received_at: datetime) -> str:
    """Daily UTC bucket, e.g. ``2024-05-01``."""
    if received_at.tzinfo is not None:
        received_at = received_at.astimezone(timezone.utc)
    return received_at.strftime("%Y-%m-%d")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def derive_fields(derived: Dict[str, Any], event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return new derived totals with one more event folded in.

    Tracks events per type, match quality (``matchType`` and ``matchScore``)
    and cache hit rates (``performance.cacheHit``) when the payload has them.
    """
    fields = copy.deepcopy(derived)

    by_type = fields.setdefault("events_by_type", {})
    by_type[event_type] = by_type.get(event_type, 0) + 1

    match_type = payload.get("matchType")
    if match_type in MATCH_TYPES:
        match_types = fields.setdefault("match_types", {})
        match_types[match_type] = match_types.get(match_type, 0) + 1

    score = payload.get("matchScore")
    if _is_number(score):
        fields["match_score_total"] = fields.get("match_score_total", 0) + score
        fields["match_score_count"] = fields.get("match_score_count", 0) + 1
        fields["match_score_avg"] = round(fields["match_score_total"] / fields["match_score_count"], 2)

    performance = payload.get("performance")
    if isinstance(performance, dict) and isinstance(performance.get("cacheHit"), bool):
        name = "cache_hits" if performance["cacheHit"] else "cache_misses"
        fields[name] = fields.get(name, 0) + 1

    return fields


@dataclass(eq=False)
class AppliedKey:
    """Idempotency key of a message already folded into an aggregate."""
    aggregate_key: str
    idempotency_key: str
    applied_at: datetime

    def __eq__(self, other):
        if not isinstance(other, AppliedKey):
            return False
        return (other.aggregate_key, other.idempotency_key) == (self.aggregate_key, self.idempotency_key)

    def __hash__(self):
        return hash((self.aggregate_key, self.idempotency_key))


@dataclass(eq=False)
class AggregateRecord:
    """
    Daily totals.

    ``applied_keys`` holds only the keys this instance knows about: those
    looked up by the repository for the message in hand and those applied
    through it. ``new_applied_keys`` are staged for the next commit.
    """
    aggregate_key: str
    count: int = 0
    derived_fields: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    applied_keys: Set[str] = field(default_factory=set, repr=False)
    new_applied_keys: List[AppliedKey] = field(default_factory=list, repr=False)
    events: List = field(default_factory=list, repr=False)

    def __eq__(self, other):
        if not isinstance(other, AggregateRecord):
            return False
        return other.aggregate_key == self.aggregate_key

    def __hash__(self):
        return hash(self.aggregate_key)

    def has_applied(self, idempotency_key: str) -> bool:
        return idempotency_key in self.applied_keys

    def apply(
        self,
        idempotency_key: str,
        stored_event: Dict[str, Any],
        now: datetime,
    ) -> bool:
        """
        Fold a stored event into the totals.

        Returns False without touching any state when ``idempotency_key`` was
        already applied.
        """
        if self.has_applied(idempotency_key):
            return False

        # New container so the JSON column registers the change
        self.count = self.count + 1
        self.derived_fields = derive_fields(
            self.derived_fields or {},
            stored_event.get("event_type") or "unknown",
            stored_event.get("payload") or {},
        )
        self.applied_keys.add(idempotency_key)
        self.new_applied_keys.append(AppliedKey(self.aggregate_key, idempotency_key, now))
        self.updated_at = now

        self.events.append(
            AggregateUpdated(
                aggregate_key=self.aggregate_key,
                count=self.count,
                derived_fields=self.derived_fields,
                idempotency_key=idempotency_key,
                correlation_id=stored_event["correlation_id"],
                record_ref=stored_event["event_key"],
                received_at=stored_event["received_at"],
                sequence_hint=stored_event.get("sequence_hint"),
                updated_at=now,
            )
        )
        return True


@dataclass(eq=False)
class CorrelationEntry:
    """One event on a correlation timeline. Entries are appended, never changed."""
    correlation_id: str
    record_ref: str
    received_at: datetime
    aggregate_key: Optional[str] = None
    sequence_hint: Optional[int] = None

    def __eq__(self, other):
        if not isinstance(other, CorrelationEntry):
            return False
        return (other.correlation_id, other.record_ref) == (self.correlation_id, self.record_ref)

    def __hash__(self):
        return hash((self.correlation_id, self.record_ref))

    def sort_key(self):
        return (self.received_at, self.sequence_hint if self.sequence_hint is not None else 0)
