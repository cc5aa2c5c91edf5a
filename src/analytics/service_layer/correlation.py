"""
Correlation index: per-correlation timelines of processed events.

Appends are idempotent on (correlation_id, record_ref), so replaying the
same event never duplicates a timeline entry. The index trails the
aggregate store slightly: it is written by an event handler after the
aggregate commit.
"""

import logging
from typing import List

from sqlalchemy.exc import IntegrityError

from analytics.adapters.event_client import AbstractEventClient
from analytics.domain.model import CorrelationEntry, aggregate_key_for
from analytics.service_layer.unit_of_work import AbstractAnalyticsUnitOfWork

logger = logging.getLogger(__name__)


def append(uow: AbstractAnalyticsUnitOfWork, entry: CorrelationEntry) -> bool:
    """Add an entry to its timeline; returns False if it was already there."""
    with uow:
        if uow.correlations.exists(entry.correlation_id, entry.record_ref):
            return False
        uow.correlations.add(entry)
        try:
            uow.commit()
        except IntegrityError:
            # A concurrent append of the same entry won
            logger.debug(f"Correlation entry {entry.record_ref} already recorded")
            return False
    return True


def timeline(uow: AbstractAnalyticsUnitOfWork, correlation_id: str) -> List[CorrelationEntry]:
    """Entries for one correlation id ordered by (received_at, sequence_hint)."""
    with uow:
        entries = uow.correlations.list_for_correlation(correlation_id)
    return sorted(entries, key=CorrelationEntry.sort_key)


def rebuild(uow: AbstractAnalyticsUnitOfWork, correlation_id: str, event_client: AbstractEventClient) -> int:
    """
    Re-derive a timeline from the event store.

    Restores entries whose append was lost after the aggregate commit.
    Returns how many entries were added.
    """
    added = 0
    for stored in event_client.list_events_for_correlation(correlation_id):
        entry = CorrelationEntry(
            correlation_id=stored["correlation_id"],
            record_ref=stored["event_key"],
            received_at=stored["received_at"],
            aggregate_key=aggregate_key_for(stored["received_at"]),
            sequence_hint=stored.get("sequence_hint"),
        )
        if append(uow, entry):
            added += 1

    logger.info(f"Rebuilt correlation {correlation_id}: {added} entries added")
    return added
