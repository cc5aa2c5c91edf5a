"""Queue message store following the repository pattern."""

import abc
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import func, or_, select
from sqlalchemy.orm import aliased

from queueing.domain.model import MessageState, QueuedMessage

logger = logging.getLogger(__name__)

ACTIVE_STATES = (MessageState.PENDING.value, MessageState.IN_FLIGHT.value)


class AbstractMessageRepository(abc.ABC):

    def __init__(self):
        self.seen = set()  # type: Set[QueuedMessage]

    def add(self, message: QueuedMessage) -> str:
        self._add(message)
        self.seen.add(message)
        return message.message_id

    def get(self, queue_name: str, message_id: str) -> Optional[QueuedMessage]:
        message = self._get(queue_name, message_id)
        if message:
            self.seen.add(message)
        return message

    def candidates(self, queue_name: str, now: datetime, limit: int) -> List[QueuedMessage]:
        """
        Active messages whose visibility has lapsed, oldest first, locked for this transaction.

        A grouped message is a candidate only while it is the oldest active
        message of its group, so a group whose head is in flight contributes
        nothing and cannot crowd other messages out of the scan.
        """
        messages = self._candidates(queue_name, now, limit)
        self.seen.update(messages)
        return messages

    def hidden_groups(self, queue_name: str, now: datetime) -> Set[str]:
        return self._hidden_groups(queue_name, now)

    def find_by_dedup_id(self, queue_name: str, dedup_id: str, since: datetime) -> Optional[QueuedMessage]:
        return self._find_by_dedup_id(queue_name, dedup_id, since)

    def count_by_state(self, queue_name: str) -> Dict[str, int]:
        return self._count_by_state(queue_name)

    def count_visible(self, queue_name: str, now: datetime) -> int:
        return self._count_visible(queue_name, now)

    def list_in_queue(self, queue_name: str, limit: int) -> List[QueuedMessage]:
        return self._list_in_queue(queue_name, limit)

    @abc.abstractmethod
    def _add(self, message: QueuedMessage):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, queue_name: str, message_id: str) -> Optional[QueuedMessage]:
        raise NotImplementedError

    @abc.abstractmethod
    def _candidates(self, queue_name: str, now: datetime, limit: int) -> List[QueuedMessage]:
        raise NotImplementedError

    @abc.abstractmethod
    def _hidden_groups(self, queue_name: str, now: datetime) -> Set[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _find_by_dedup_id(self, queue_name: str, dedup_id: str, since: datetime) -> Optional[QueuedMessage]:
        raise NotImplementedError

    @abc.abstractmethod
    def _count_by_state(self, queue_name: str) -> Dict[str, int]:
        raise NotImplementedError

    @abc.abstractmethod
    def _count_visible(self, queue_name: str, now: datetime) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_in_queue(self, queue_name: str, limit: int) -> List[QueuedMessage]:
        raise NotImplementedError


class SqlAlchemyMessageRepository(AbstractMessageRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, message):
        self.session.add(message)

    def _get(self, queue_name, message_id):
        return (
            self.session.query(QueuedMessage)
            .filter_by(queue_name=queue_name, message_id=message_id)
            .first()
        )

    def _candidates(self, queue_name, now, limit):
        earlier = aliased(QueuedMessage)
        group_head = (
            select(func.min(earlier.sequence))
            .where(earlier.queue_name == queue_name)
            .where(earlier.group_key == QueuedMessage.group_key)
            .where(earlier.state.in_(ACTIVE_STATES))
            .scalar_subquery()
        )
        return (
            self.session.query(QueuedMessage)
            .filter(QueuedMessage.queue_name == queue_name)
            .filter(QueuedMessage.state.in_(ACTIVE_STATES))
            .filter(QueuedMessage.visible_after <= now)
            .filter(or_(QueuedMessage.group_key.is_(None), QueuedMessage.sequence == group_head))
            .order_by(QueuedMessage.sequence)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    def _hidden_groups(self, queue_name, now):
        rows = (
            self.session.query(QueuedMessage.group_key)
            .filter(QueuedMessage.queue_name == queue_name)
            .filter(QueuedMessage.state.in_(ACTIVE_STATES))
            .filter(QueuedMessage.visible_after > now)
            .filter(QueuedMessage.group_key.isnot(None))
            .distinct()
            .all()
        )
        return {row[0] for row in rows}

    def _find_by_dedup_id(self, queue_name, dedup_id, since):
        # Dead-lettered copies keep counting against the window of their source queue
        return (
            self.session.query(QueuedMessage)
            .filter(
                (QueuedMessage.queue_name == queue_name)
                | (QueuedMessage.source_queue == queue_name)
            )
            .filter(QueuedMessage.dedup_id == dedup_id)
            .filter(QueuedMessage.enqueued_at >= since)
            .order_by(QueuedMessage.sequence.desc())
            .first()
        )

    def _count_by_state(self, queue_name):
        rows = (
            self.session.query(QueuedMessage.state, func.count(QueuedMessage.sequence))
            .filter(QueuedMessage.queue_name == queue_name)
            .group_by(QueuedMessage.state)
            .all()
        )
        return {state: count for state, count in rows}

    def _count_visible(self, queue_name, now):
        return (
            self.session.query(func.count(QueuedMessage.sequence))
            .filter(QueuedMessage.queue_name == queue_name)
            .filter(QueuedMessage.state.in_(ACTIVE_STATES))
            .filter(QueuedMessage.visible_after <= now)
            .scalar()
        )

    def _list_in_queue(self, queue_name, limit):
        return (
            self.session.query(QueuedMessage)
            .filter(QueuedMessage.queue_name == queue_name)
            .filter(QueuedMessage.state != MessageState.DELETED.value)
            .order_by(QueuedMessage.sequence)
            .limit(limit)
            .all()
        )
