"""Event store repository following Cosmic Python approach."""

import abc
import logging
from typing import List, Optional, Set

from sqlalchemy import or_

from ingestion.domain.model import IngestedEvent

logger = logging.getLogger(__name__)


class AbstractEventRepository(abc.ABC):
    """
    Abstract event store. Events are only ever added, never deleted; the
    emission marker is the one column updated after insert.
    """

    def __init__(self):
        self.seen = set()  # type: Set[IngestedEvent]

    def add(self, ingested_event: IngestedEvent) -> str:
        self._add(ingested_event)
        self.seen.add(ingested_event)
        return ingested_event.event_key

    def get(self, event_key: str) -> Optional[IngestedEvent]:
        ingested_event = self._get(event_key)
        if ingested_event:
            self.seen.add(ingested_event)
        return ingested_event

    def get_by_delivery_id(self, partition: str, delivery_id: str) -> Optional[IngestedEvent]:
        return self._get_by_delivery_id(partition, delivery_id)

    def list_for_correlation(self, correlation_id: str) -> List[IngestedEvent]:
        return self._list_for_correlation(correlation_id)

    def list_after_sequence(
        self,
        partition: str,
        after_sequence: int,
        emitted_since: Optional[int] = None,
        limit: int = 500,
    ) -> List[IngestedEvent]:
        """
        Events of a partition past ``after_sequence``, in sequence order.

        With ``emitted_since`` (stream time in ms) only events never emitted,
        or last emitted at or after that time, are returned.
        """
        return self._list_after_sequence(partition, after_sequence, emitted_since, limit)

    def list_unemitted(self, partition: str, limit: int = 500) -> List[IngestedEvent]:
        """Events with no change notification yet, in sequence order, locked for emission."""
        return self._list_unemitted(partition, limit)

    def unemitted_partitions(self) -> List[str]:
        return self._unemitted_partitions()

    @abc.abstractmethod
    def _add(self, ingested_event: IngestedEvent):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, event_key: str) -> Optional[IngestedEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_by_delivery_id(self, partition: str, delivery_id: str) -> Optional[IngestedEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_for_correlation(self, correlation_id: str) -> List[IngestedEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_after_sequence(
        self, partition: str, after_sequence: int, emitted_since: Optional[int], limit: int
    ) -> List[IngestedEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_unemitted(self, partition: str, limit: int) -> List[IngestedEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _unemitted_partitions(self) -> List[str]:
        raise NotImplementedError


class SqlAlchemyEventRepository(AbstractEventRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, ingested_event):
        self.session.add(ingested_event)

    def _get(self, event_key):
        return self.session.query(IngestedEvent).filter_by(event_key=event_key).first()

    def _get_by_delivery_id(self, partition, delivery_id):
        return (
            self.session.query(IngestedEvent)
            .filter_by(partition=partition, delivery_id=delivery_id)
            .first()
        )

    def _list_for_correlation(self, correlation_id):
        return (
            self.session.query(IngestedEvent)
            .filter_by(correlation_id=correlation_id)
            .order_by(IngestedEvent.received_at, IngestedEvent.sequence_hint)
            .all()
        )

    def _list_after_sequence(self, partition, after_sequence, emitted_since, limit):
        query = (
            self.session.query(IngestedEvent)
            .filter(IngestedEvent.partition == partition)
            .filter(IngestedEvent.sequence_hint > after_sequence)
        )
        if emitted_since is not None:
            query = query.filter(
                or_(IngestedEvent.emitted_ms.is_(None), IngestedEvent.emitted_ms >= emitted_since)
            )
        return query.order_by(IngestedEvent.sequence_hint).limit(limit).all()

    def _list_unemitted(self, partition, limit):
        return (
            self.session.query(IngestedEvent)
            .filter(IngestedEvent.partition == partition)
            .filter(IngestedEvent.emitted_ms.is_(None))
            .order_by(IngestedEvent.sequence_hint)
            .limit(limit)
            .with_for_update()
            .all()
        )

    def _unemitted_partitions(self):
        rows = (
            self.session.query(IngestedEvent.partition)
            .filter(IngestedEvent.emitted_ms.is_(None))
            .distinct()
            .order_by(IngestedEvent.partition)
            .all()
        )
        return [row[0] for row in rows]
