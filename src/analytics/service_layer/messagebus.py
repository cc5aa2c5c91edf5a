# pylint: disable=broad-except
"""Message bus for the analytics service following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from analytics.domain.commands import ApplyChange, RebuildCorrelation
from analytics.domain.events import AggregateUpdated
from analytics.service_layer import handlers

if TYPE_CHECKING:
    from analytics.service_layer.unit_of_work import AbstractAnalyticsUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[ApplyChange, RebuildCorrelation, AggregateUpdated]


def handle(
    message: Message,
    uow: AbstractAnalyticsUnitOfWork,
):
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            results.append(handle_command(message, queue, uow))
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractAnalyticsUnitOfWork,
):
    """
    Run every handler registered for the event.

    The aggregate is already committed when these run, so a failing
    follow-up (timeline append, live publish) is logged and skipped rather
    than failing the message.
    """
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {type(event).__name__} with handler {handler.__name__}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", type(event).__name__)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractAnalyticsUnitOfWork,
):
    logger.debug(f"handling command {type(command).__name__}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", type(command).__name__)
        raise


EVENT_HANDLERS = {
    AggregateUpdated: [
        handlers.record_correlation,
        handlers.publish_aggregate_update,
    ],
}  # type: Dict[Type[Event], List[Callable]]

COMMAND_HANDLERS = {
    ApplyChange: handlers.apply_change,
    RebuildCorrelation: handlers.rebuild_correlation,
}  # type: Dict[Type[Command], Callable]
