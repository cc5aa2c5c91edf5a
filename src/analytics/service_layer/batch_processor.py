"""
Batch processor: applies received queue messages to aggregates.

Each message is handled on its own. Successes are deleted from the queue,
failures are handed back (and dead-lettered once their receives are spent),
and messages the batch had no time left for are left alone so their
visibility timeout makes them eligible again. One bad message never fails
the batch; redelivered successes are harmless because aggregate updates are
idempotent.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

from analytics.domain.commands import ApplyChange
from analytics.service_layer import messagebus
from analytics.service_layer.unit_of_work import AbstractAnalyticsUnitOfWork
from queueing.domain.model import QueuedMessage
from queueing.service_layer.queue import DurableQueue
from shared.domain.errors import MessageNotFound, TerminalProcessingError, TransientProcessingError
from shared.service_layer.retry import exponential_retrying

logger = logging.getLogger(__name__)


class BudgetExhausted(Exception):
    """The batch's wall-clock budget ran out before a message finished."""
    pass


@dataclass
class BatchResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failed) + len(self.timed_out)


class BatchProcessor:

    def __init__(
        self,
        queue: DurableQueue,
        uow_factory: Callable[[], AbstractAnalyticsUnitOfWork],
        max_attempts: int = 5,
        budget_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.uow_factory = uow_factory
        self.max_attempts = max_attempts
        self.budget_seconds = budget_seconds
        self.sleep = sleep
        self.clock = clock

    def process_batch(self, messages: List[QueuedMessage]) -> BatchResult:
        deadline = self.clock() + self.budget_seconds
        result = BatchResult()

        for message in messages:
            if self.clock() >= deadline:
                result.timed_out.append(message.message_id)
                continue

            try:
                self._process(message, deadline)
            except BudgetExhausted:
                logger.warning(f"Batch budget spent while processing {message.message_id}")
                result.timed_out.append(message.message_id)
                continue
            except TerminalProcessingError as e:
                self._fail(message, e, result)
                continue
            except Exception as e:  # pylint: disable=broad-except
                logger.exception("Unexpected error processing message %s", message.message_id)
                self._fail(message, e, result)
                continue

            self._acknowledge(message, result)

        if result.timed_out:
            logger.warning(f"{len(result.timed_out)} messages left for redelivery after the {self.budget_seconds}s budget")
        logger.info(
            f"Batch done: {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
            f"{len(result.timed_out)} timed out"
        )
        return result

    def _process(self, message: QueuedMessage, deadline: float):
        command = ApplyChange(
            message_id=message.message_id,
            idempotency_key=message.idempotency_key,
            notification=message.body,
        )

        def sleep_within_budget(seconds: float):
            if self.clock() + seconds > deadline:
                raise BudgetExhausted(f"{seconds}s backoff would overrun the batch budget")
            self.sleep(seconds)

        retrying = exponential_retrying(
            self.max_attempts,
            retry_on=(TransientProcessingError,),
            sleep=sleep_within_budget,
        )
        try:
            retrying(self._handle, command)
        except TransientProcessingError as e:
            raise TerminalProcessingError(
                f"Message {message.message_id} failed {self.max_attempts} attempts: {e}"
            ) from e

    def _handle(self, command: ApplyChange):
        return messagebus.handle(command, self.uow_factory())

    def _acknowledge(self, message: QueuedMessage, result: BatchResult):
        result.succeeded.append(message.message_id)
        try:
            self.queue.delete(message.message_id)
        except MessageNotFound:
            # Lease lapsed; the redelivery will be recognised as already applied
            logger.warning(f"Could not delete {message.message_id}, it will be redelivered")

    def _fail(self, message: QueuedMessage, error: Exception, result: BatchResult):
        result.failed.append(message.message_id)
        logger.error(f"Message {message.message_id} failed: {error}")
        try:
            if self.queue.nack(message.message_id, str(error)):
                result.dead_lettered.append(message.message_id)
        except MessageNotFound:
            logger.warning(f"Could not release {message.message_id}, its lease already lapsed")
