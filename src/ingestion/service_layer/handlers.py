import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

import config
from changefeed.domain.model import ChangeNotification, ChangeType, parse_position
from ingestion.domain.commands import EmitPendingChanges, IngestWebhook, ResyncChanges
from ingestion.domain.events import EventStored
from ingestion.domain.model import IngestedEvent
from ingestion.service_layer.unit_of_work import AbstractIngestionUnitOfWork
from shared.domain.errors import WriteError
from shared.service_layer.retry import immediate_retrying

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3
EMIT_BATCH_SIZE = 500


def ingest_webhook(command: IngestWebhook, uow: AbstractIngestionUnitOfWork) -> str:
    """
    Durably persist a verified webhook event.

    Flow:
    1. Return the stored key if this sender delivery was already ingested
    2. Build the IngestedEvent (correlation id, received_at, key)
    3. Insert and commit in one transaction, with a few immediate retries
    4. Mark stored, raising EventStored for change capture

    Returns:
        event_key: key of the stored (or previously stored) event

    Raises:
        WriteError: the event store is unavailable
    """
    partition = command.source
    verified = command.verified

    if command.delivery_id:
        existing_key = _existing_delivery(uow, partition, command.delivery_id)
        if existing_key:
            logger.info(f"Delivery {command.delivery_id} already ingested as {existing_key}")
            return existing_key

    ingested = IngestedEvent.create(
        partition=partition,
        payload=verified.payload,
        raw_payload=verified.raw_body,
        signature=verified.signature,
        received_at=command.received_at or datetime.now(timezone.utc),
        correlation_paths=config.get_correlation_paths(),
        delivery_id=command.delivery_id,
    )

    try:
        return immediate_retrying(WRITE_ATTEMPTS, retry_on=(OperationalError,))(_write, ingested, uow)
    except IntegrityError as e:
        # A concurrent request for the same delivery won the insert
        if command.delivery_id:
            existing_key = _existing_delivery(uow, partition, command.delivery_id)
            if existing_key:
                return existing_key
        logger.error(f"Failed to store event {ingested.event_key}: {e}")
        raise WriteError(f"Event store rejected write: {e}") from e
    except SQLAlchemyError as e:
        logger.error(f"Event store unavailable after {WRITE_ATTEMPTS} attempts for {ingested.event_key}: {e}")
        raise WriteError(f"Event store unavailable: {e}") from e


def _existing_delivery(uow: AbstractIngestionUnitOfWork, partition: str, delivery_id: str):
    with uow:
        existing = uow.events.get_by_delivery_id(partition, delivery_id)
        return existing.event_key if existing else None


def _write(ingested: IngestedEvent, uow: AbstractIngestionUnitOfWork) -> str:
    ingested.sequence_hint = None
    with uow:
        event_key = uow.events.add(ingested)
        uow.commit()
        ingested.mark_stored()
        logger.info(f"Stored event {event_key} (sequence {ingested.sequence_hint})")
    return event_key


def capture_change(event: EventStored, uow: AbstractIngestionUnitOfWork):
    """
    Emit the change notification for a stored event.

    Anything still pending in the partition goes out first, in sequence
    order, so an earlier capture that failed is delivered ahead of this one.
    A failure here leaves the event pending for EmitPendingChanges.
    """
    emitted = _emit_pending(event.partition, uow)
    logger.info(f"Captured {emitted} change(s) in {event.partition} for {event.event_key}")


def emit_pending_changes(command: EmitPendingChanges, uow: AbstractIngestionUnitOfWork) -> int:
    """
    Emit notifications for stored events that have none yet.

    Returns:
        emitted: number of notifications appended to the change stream
    """
    if command.partition:
        partitions = [command.partition]
    else:
        with uow:
            partitions = uow.events.unemitted_partitions()

    emitted = sum(_emit_pending(partition, uow) for partition in partitions)
    if emitted:
        logger.warning(f"Emitted {emitted} pending changes in {', '.join(partitions)}")
    return emitted


def resync_changes(command: ResyncChanges, uow: AbstractIngestionUnitOfWork) -> int:
    """
    Re-emit notifications for stored events of a partition.

    Used when a consumer fell behind the stream's retention window. Given
    ``after_position``, the last position the consumer routed, every event
    last emitted at or after that stream time is re-emitted, plus any never
    emitted, whatever their sequence: stream order is emission order, not
    sequence order. Otherwise everything after ``after_sequence`` is.
    Consumers see duplicates of notifications they already had; processing
    is idempotent on the event key.
    """
    emitted_since = None
    if command.after_position:
        emitted_since, _ = parse_position(command.after_position)

    after = command.after_sequence
    emitted = 0

    while True:
        with uow:
            batch = uow.events.list_after_sequence(command.partition, after, emitted_since=emitted_since)
            if not batch:
                break
            for ingested in batch:
                _emit(ingested, uow)
            uow.commit()

        emitted += len(batch)
        after = batch[-1].sequence_hint

    logger.info(f"Resynced {emitted} changes for partition {command.partition}")
    return emitted


def _emit_pending(partition: str, uow: AbstractIngestionUnitOfWork) -> int:
    # Concurrent emitters serialize on the row locks; the loser retries
    return immediate_retrying(WRITE_ATTEMPTS, retry_on=(OperationalError,))(_emit_pending_once, partition, uow)


def _emit_pending_once(partition: str, uow: AbstractIngestionUnitOfWork) -> int:
    emitted = 0
    while True:
        with uow:
            batch = uow.events.list_unemitted(partition, limit=EMIT_BATCH_SIZE)
            if not batch:
                return emitted
            for ingested in batch:
                _emit(ingested, uow)
            uow.commit()
        emitted += len(batch)


def _emit(ingested: IngestedEvent, uow: AbstractIngestionUnitOfWork) -> str:
    position = uow.changes.append(_notification_for(ingested))
    position_ms, _ = parse_position(position)
    ingested.mark_emitted(position_ms)
    return position


def _notification_for(ingested: IngestedEvent) -> ChangeNotification:
    return ChangeNotification(
        event_key=ingested.event_key,
        change_type=ChangeType.ADDED,
        partition=ingested.partition,
        correlation_id=ingested.correlation_id,
        received_at=ingested.received_at,
        attributes={
            "event_type": ingested.event_type,
            "source": ingested.partition,
            "sequence_hint": ingested.sequence_hint,
        },
    )
