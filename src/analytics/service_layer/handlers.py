import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from analytics.domain.commands import ApplyChange, RebuildCorrelation
from analytics.domain.events import AggregateUpdated
from analytics.domain.model import AggregateRecord, CorrelationEntry, aggregate_key_for
from analytics.service_layer import correlation
from analytics.service_layer.unit_of_work import AbstractAnalyticsUnitOfWork
from shared.domain.errors import TransientProcessingError

logger = logging.getLogger(__name__)


def apply_change(command: ApplyChange, uow: AbstractAnalyticsUnitOfWork) -> bool:
    """
    Fold the event behind a change notification into its daily aggregate.

    Flow:
    1. Fetch the stored event from the ingestion service
    2. Load (or start) the aggregate for the event's UTC day
    3. Apply it, gated on the message's idempotency key
    4. Commit the totals and the applied key together with a version check;
       AggregateUpdated follows the commit

    Returns:
        True if the aggregate changed, False if the message was already applied

    Raises:
        TransientProcessingError: fetch failed or another writer won the race
        TerminalProcessingError: the event can never be fetched
    """
    event_key = command.notification["event_key"]
    stored = uow.event_client.get_event(event_key)
    aggregate_key = aggregate_key_for(stored["received_at"])

    try:
        with uow:
            record = uow.aggregates.get(aggregate_key, command.idempotency_key)
            if record is None:
                record = AggregateRecord(aggregate_key=aggregate_key)
                uow.aggregates.add(record)

            applied = record.apply(command.idempotency_key, stored, now=datetime.now(timezone.utc))
            if not applied:
                logger.info(f"Message {command.idempotency_key} already applied to {aggregate_key}")
                return False

            uow.commit()

    except (StaleDataError, IntegrityError, OperationalError) as e:
        # Lost the version race or the insert race (record or applied key), or the store hiccupped
        raise TransientProcessingError(f"Conditional write to {aggregate_key} failed: {e}") from e

    logger.info(f"Applied {event_key} to {aggregate_key} (count {record.count})")
    return True


def record_correlation(event: AggregateUpdated, uow: AbstractAnalyticsUnitOfWork):
    entry = CorrelationEntry(
        correlation_id=event.correlation_id,
        record_ref=event.record_ref,
        received_at=event.received_at,
        aggregate_key=event.aggregate_key,
        sequence_hint=event.sequence_hint,
    )
    correlation.append(uow, entry)


def publish_aggregate_update(event: AggregateUpdated, uow: AbstractAnalyticsUnitOfWork):
    uow.notifier.notify(event)


def rebuild_correlation(command: RebuildCorrelation, uow: AbstractAnalyticsUnitOfWork) -> int:
    return correlation.rebuild(uow, command.correlation_id, uow.event_client)
