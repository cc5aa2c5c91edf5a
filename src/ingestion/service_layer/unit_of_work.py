# pylint: disable=attribute-defined-outside-init
"""Unit of Work implementation for the ingestion service."""

from __future__ import annotations

from datetime import timedelta

import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session

import config
from changefeed.adapters.stream import AbstractChangeStream, RedisChangeStream
from ingestion.adapters import repository
from shared.service_layer.unit_of_work import AbstractUnitOfWork


class AbstractIngestionUnitOfWork(AbstractUnitOfWork):
    events: repository.AbstractEventRepository
    changes: AbstractChangeStream

    def _repositories(self):
        return [self.events]


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="REPEATABLE READ",
    ),
    expire_on_commit=False,
)


def default_change_stream() -> RedisChangeStream:
    stream_config = config.get_change_stream_config()
    return RedisChangeStream(
        client=redis.Redis(**config.get_redis_host_and_port()),
        prefix=stream_config["prefix"],
        retention=timedelta(hours=stream_config["retention_hours"]),
    )


class SqlAlchemyUnitOfWork(AbstractIngestionUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY, change_stream: AbstractChangeStream = None):
        self.session_factory = session_factory
        self.changes = change_stream or default_change_stream()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.events = repository.SqlAlchemyEventRepository(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
