# pylint: disable=attribute-defined-outside-init
"""Unit of Work for the analytics store."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session

import config
from analytics.adapters import event_client, realtime, repository
from shared.service_layer.unit_of_work import AbstractUnitOfWork


class AbstractAnalyticsUnitOfWork(AbstractUnitOfWork):
    aggregates: repository.AbstractAggregateRepository
    correlations: repository.AbstractCorrelationRepository
    event_client: event_client.AbstractEventClient
    notifier: realtime.AbstractNotifier

    def _repositories(self):
        # Handlers that never opened the unit of work have nothing to collect
        return [self.aggregates] if hasattr(self, "aggregates") else []


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="REPEATABLE READ",
    ),
    expire_on_commit=False,
)


class SqlAlchemyUnitOfWork(AbstractAnalyticsUnitOfWork):
    def __init__(
        self,
        session_factory=DEFAULT_SESSION_FACTORY,
        event_client_impl: event_client.AbstractEventClient = None,
        notifier: realtime.AbstractNotifier = None,
    ):
        self.session_factory = session_factory
        self.event_client = event_client_impl or event_client.HTTPEventClient()
        self.notifier = notifier or realtime.RedisNotifier(config.get_realtime_config()["channel"])

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.aggregates = repository.SqlAlchemyAggregateRepository(self.session)
        self.correlations = repository.SqlAlchemyCorrelationRepository(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.aggregates.stage_applied_keys()
        self.session.commit()

    def rollback(self):
        self.session.rollback()
