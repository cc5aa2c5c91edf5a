"""
Durable queue service.

At-least-once delivery with visibility timeouts, per-message receive counts,
group FIFO ordering and dead-lettering, on top of the SQL message store.
Every operation runs in its own unit of work so a crashed consumer never
holds a lease longer than its visibility timeout.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm.exc import StaleDataError

import config
from queueing.domain.model import (
    InvalidTransition,
    MessageState,
    QueuedMessage,
    QueuePolicy,
    select_deliverable,
)
from queueing.service_layer.unit_of_work import AbstractQueueUnitOfWork, SqlAlchemyUnitOfWork
from shared.domain.errors import MessageNotFound

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.0
MIN_CANDIDATE_SCAN = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DurableQueue:

    def __init__(
        self,
        name: str,
        uow_factory: Callable[[], AbstractQueueUnitOfWork] = SqlAlchemyUnitOfWork,
        policy: Optional[QueuePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.uow_factory = uow_factory
        self.policy = policy or QueuePolicy.from_settings(config.get_queue_policy())
        self.clock = clock
        self.sleep = sleep

    @property
    def dead_letter_queue(self) -> str:
        return QueuePolicy.dead_letter_queue(self.name)

    def enqueue(
        self,
        body: Dict[str, Any],
        group_key: Optional[str] = None,
        dedup_id: Optional[str] = None,
    ) -> str:
        """
        Add a message and return its id.

        A message with the same dedup id enqueued within the dedup window is
        not added again; the id of the earlier message is returned instead.
        """
        now = self.clock()
        with self.uow_factory() as uow:
            if dedup_id is not None:
                existing = uow.messages.find_by_dedup_id(self.name, dedup_id, now - self.policy.dedup_window)
                if existing is not None:
                    logger.info(f"Duplicate enqueue of {dedup_id} on {self.name}, keeping {existing.message_id}")
                    return existing.message_id

            message = QueuedMessage.create(self.name, body, now, group_key=group_key, dedup_id=dedup_id)
            uow.messages.add(message)
            uow.commit()

        logger.debug(f"Enqueued {message.message_id} on {self.name}")
        return message.message_id

    def receive_batch(self, max_count: Optional[int] = None, wait_time: float = 0) -> List[QueuedMessage]:
        """
        Lease up to ``max_count`` visible messages.

        Polls until at least one message is available or ``wait_time``
        seconds have passed. Leased messages stay hidden for the visibility
        timeout; delete them to acknowledge.
        """
        max_count = min(max_count or self.policy.max_batch_size, self.policy.max_batch_size)
        deadline = self.clock() + timedelta(seconds=wait_time)

        while True:
            messages = self._receive_once(max_count)
            if messages:
                return messages
            remaining = (deadline - self.clock()).total_seconds()
            if remaining <= 0:
                return []
            self.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    def _receive_once(self, max_count: int) -> List[QueuedMessage]:
        now = self.clock()
        try:
            with self.uow_factory() as uow:
                busy_groups = uow.messages.hidden_groups(self.name, now)
                candidates = uow.messages.candidates(
                    self.name, now, max(max_count * 10, MIN_CANDIDATE_SCAN)
                )
                deliver, exhausted = select_deliverable(candidates, busy_groups, max_count, now, self.policy)

                for message in exhausted:
                    message.dead_letter(now, message.last_error or "visibility timeout expired on final receive")
                    logger.warning(
                        f"Message {message.message_id} dead-lettered to {message.queue_name} "
                        f"after {message.receive_count} receives"
                    )
                for message in deliver:
                    message.receive(now, self.policy.visibility_timeout)

                uow.commit()
        except StaleDataError:
            # Another consumer leased some of these rows first
            logger.info(f"Concurrent receive on {self.name}, retrying on next poll")
            return []

        return deliver

    def delete(self, message_id: str) -> None:
        with self.uow_factory() as uow:
            message = uow.messages.get(self.name, message_id)
            if message is None:
                raise MessageNotFound(f"Message {message_id} not found in {self.name}")
            try:
                message.delete()
            except InvalidTransition as e:
                raise MessageNotFound(str(e)) from e
            uow.commit()
        logger.debug(f"Deleted {message_id} from {self.name}")

    def change_visibility(self, message_id: str, timeout_seconds: float) -> None:
        with self.uow_factory() as uow:
            message = self._in_flight(uow, message_id)
            message.change_visibility(self.clock(), timedelta(seconds=timeout_seconds))
            uow.commit()

    def nack(self, message_id: str, error: str) -> bool:
        """
        Record a failed attempt; returns True if the message was dead-lettered.

        A message with receives left stays hidden until its visibility timeout
        lapses and is then redelivered.
        """
        with self.uow_factory() as uow:
            message = self._in_flight(uow, message_id)
            dead_lettered = message.fail(self.clock(), error, self.policy)
            uow.commit()

        if dead_lettered:
            logger.warning(f"Message {message_id} dead-lettered to {self.dead_letter_queue}: {error}")
        else:
            logger.info(f"Message {message_id} failed on {self.name}, will be redelivered: {error}")
        return dead_lettered

    def _in_flight(self, uow: AbstractQueueUnitOfWork, message_id: str) -> QueuedMessage:
        message = uow.messages.get(self.name, message_id)
        if message is None or message.state != MessageState.IN_FLIGHT.value:
            raise MessageNotFound(f"Message {message_id} is not in flight on {self.name}")
        return message

    def depth(self) -> Dict[str, int]:
        """Message counts for operators: backlog, leases, visible now and dead letters."""
        now = self.clock()
        with self.uow_factory() as uow:
            counts = uow.messages.count_by_state(self.name)
            visible = uow.messages.count_visible(self.name, now)
            dead = uow.messages.count_by_state(self.dead_letter_queue)

        return {
            "pending": counts.get(MessageState.PENDING.value, 0),
            "in_flight": counts.get(MessageState.IN_FLIGHT.value, 0),
            "visible": visible,
            "dead_lettered": dead.get(MessageState.DEAD_LETTERED.value, 0),
        }

    def dead_letters(self, limit: int = 100) -> List[QueuedMessage]:
        with self.uow_factory() as uow:
            return uow.messages.list_in_queue(self.dead_letter_queue, limit)

    def redrive(self, message_id: str) -> None:
        """Return a dead-lettered message to this queue for another round of receives."""
        with self.uow_factory() as uow:
            message = uow.messages.get(self.dead_letter_queue, message_id)
            if message is None:
                raise MessageNotFound(f"Message {message_id} not found in {self.dead_letter_queue}")
            message.redrive(self.clock())
            uow.commit()
        logger.info(f"Redrove {message_id} from {self.dead_letter_queue} to {self.name}")
