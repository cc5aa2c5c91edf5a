# pylint: disable=broad-except
"""Message bus for the ingestion service following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from ingestion.domain.commands import EmitPendingChanges, IngestWebhook, ResyncChanges
from ingestion.domain.events import EventStored
from ingestion.service_layer import handlers

if TYPE_CHECKING:
    from ingestion.service_layer.unit_of_work import AbstractIngestionUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[IngestWebhook, ResyncChanges, EmitPendingChanges, EventStored]


def handle(
    message: Message,
    uow: AbstractIngestionUnitOfWork,
):
    """Handle message (command or event) with the appropriate handler."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractIngestionUnitOfWork,
):
    """
    Handle event by calling all registered event handlers.

    Failures are logged and skipped: the write they follow is already durable,
    and an event whose change was not captured stays pending until
    EmitPendingChanges picks it up.
    """
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {type(event).__name__} with handler {handler.__name__}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractIngestionUnitOfWork,
):
    """Handle command by calling the registered command handler."""
    logger.debug(f"handling command {type(command).__name__}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        new_events = list(uow.collect_new_events())
        logger.debug(f"Collected {len(new_events)} events after command: {[type(e).__name__ for e in new_events]}")
        queue.extend(new_events)
        return result
    except Exception:
        logger.exception("Exception handling command %s", type(command).__name__)
        raise


EVENT_HANDLERS = {
    EventStored: [
        handlers.capture_change,
    ],
}  # type: Dict[Type[Event], List[Callable]]

COMMAND_HANDLERS = {
    IngestWebhook: handlers.ingest_webhook,
    ResyncChanges: handlers.resync_changes,
    EmitPendingChanges: handlers.emit_pending_changes,
}  # type: Dict[Type[Command], Callable]
