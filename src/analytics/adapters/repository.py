"""Aggregate and correlation repositories following Cosmic Python approach."""

import abc
import logging
from typing import List, Optional, Set

from analytics.domain.model import AggregateRecord, AppliedKey, CorrelationEntry

logger = logging.getLogger(__name__)


class AbstractAggregateRepository(abc.ABC):

    def __init__(self):
        self.seen = set()  # type: Set[AggregateRecord]

    def add(self, record: AggregateRecord):
        self._add(record)
        self.seen.add(record)

    def get(self, aggregate_key: str, idempotency_key: Optional[str] = None) -> Optional[AggregateRecord]:
        """With ``idempotency_key`` the record also learns whether that key was already applied."""
        record = self._get(aggregate_key)
        if record:
            if idempotency_key and self._has_applied(aggregate_key, idempotency_key):
                record.applied_keys.add(idempotency_key)
            self.seen.add(record)
        return record

    def stage_applied_keys(self):
        """Add the keys applied through every record seen to the pending transaction."""
        for record in self.seen:
            while record.new_applied_keys:
                self._add_applied_key(record.new_applied_keys.pop(0))

    def list(self, limit: int = 100) -> List[AggregateRecord]:
        return self._list(limit)

    @abc.abstractmethod
    def _add(self, record: AggregateRecord):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, aggregate_key: str) -> Optional[AggregateRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, limit: int) -> List[AggregateRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    def _has_applied(self, aggregate_key: str, idempotency_key: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def _add_applied_key(self, applied_key: AppliedKey):
        raise NotImplementedError


class SqlAlchemyAggregateRepository(AbstractAggregateRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, record):
        self.session.add(record)

    def _get(self, aggregate_key):
        return self.session.query(AggregateRecord).filter_by(aggregate_key=aggregate_key).first()

    def _list(self, limit):
        return (
            self.session.query(AggregateRecord)
            .order_by(AggregateRecord.aggregate_key.desc())
            .limit(limit)
            .all()
        )

    def _has_applied(self, aggregate_key, idempotency_key):
        return (
            self.session.query(AppliedKey)
            .filter_by(aggregate_key=aggregate_key, idempotency_key=idempotency_key)
            .first()
            is not None
        )

    def _add_applied_key(self, applied_key):
        self.session.add(applied_key)


class AbstractCorrelationRepository(abc.ABC):
    """Append-only timelines keyed by correlation id."""

    @abc.abstractmethod
    def add(self, entry: CorrelationEntry):
        raise NotImplementedError

    @abc.abstractmethod
    def exists(self, correlation_id: str, record_ref: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def list_for_correlation(self, correlation_id: str) -> List[CorrelationEntry]:
        raise NotImplementedError


class SqlAlchemyCorrelationRepository(AbstractCorrelationRepository):
    def __init__(self, session):
        self.session = session

    def add(self, entry):
        self.session.add(entry)

    def exists(self, correlation_id, record_ref):
        return (
            self.session.query(CorrelationEntry)
            .filter_by(correlation_id=correlation_id, record_ref=record_ref)
            .first()
            is not None
        )

    def list_for_correlation(self, correlation_id):
        return (
            self.session.query(CorrelationEntry)
            .filter_by(correlation_id=correlation_id)
            .order_by(CorrelationEntry.received_at, CorrelationEntry.sequence_hint)
            .all()
        )
