# pylint: disable=redefined-outer-name
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from analytics.adapters import orm as analytics_orm
from analytics.adapters.event_client import AbstractEventClient
from analytics.adapters.realtime import RealtimePublisher
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork as AnalyticsUnitOfWork
from changefeed.adapters.stream import InMemoryChangeStream, InMemoryCheckpointStore
from ingestion.adapters import orm as ingestion_orm
from ingestion.service_layer.unit_of_work import SqlAlchemyUnitOfWork as IngestionUnitOfWork
from queueing.adapters import orm as queueing_orm
from queueing.domain.model import QueuePolicy
from queueing.service_layer.queue import DurableQueue
from queueing.service_layer.unit_of_work import SqlAlchemyUnitOfWork as QueueUnitOfWork
from shared.domain.errors import TerminalProcessingError

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock shared by the queue and the tests."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeEventClient(AbstractEventClient):
    """Serves stored events from memory instead of the ingestion API."""

    def __init__(self):
        self.events = {}  # type: Dict[str, Dict[str, Any]]
        self.calls = []  # type: List[str]

    def add(self, event_key: str, correlation_id: str, received_at: datetime,
            event_type: str = "query", payload: Dict[str, Any] = None, sequence_hint: int = None):
        self.events[event_key] = {
            "event_key": event_key,
            "partition": event_key.split("/")[0],
            "correlation_id": correlation_id,
            "event_type": event_type,
            "payload": payload or {"eventType": event_type},
            "received_at": received_at,
            "sequence_hint": sequence_hint,
        }
        return self.events[event_key]

    def get_event(self, event_key):
        self.calls.append(event_key)
        if event_key not in self.events:
            raise TerminalProcessingError(f"Cannot fetch event {event_key}: HTTP 404")
        return self.events[event_key]

    def list_events_for_correlation(self, correlation_id):
        events = [e for e in self.events.values() if e["correlation_id"] == correlation_id]
        return sorted(events, key=lambda e: (e["received_at"], e["sequence_hint"] or 0))


@pytest.fixture
def sqlite_engine():
    """Create SQLite in-memory database shared by every thread and session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    for orm in (ingestion_orm, queueing_orm, analytics_orm):
        orm.metadata.create_all(engine)
        orm.start_mappers()

    yield engine

    engine.dispose()


@pytest.fixture
def sqlite_session_factory(sqlite_engine):
    yield sessionmaker(bind=sqlite_engine, expire_on_commit=False)


@pytest.fixture
def change_stream():
    return InMemoryChangeStream()


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def ingestion_uow(sqlite_session_factory, change_stream):
    return IngestionUnitOfWork(sqlite_session_factory, change_stream=change_stream)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue_policy():
    return QueuePolicy()


@pytest.fixture
def make_queue(sqlite_session_factory, clock, queue_policy):
    def _make(name: str = "analytics-aggregates") -> DurableQueue:
        return DurableQueue(
            name,
            uow_factory=lambda: QueueUnitOfWork(sqlite_session_factory),
            policy=queue_policy,
            clock=clock,
            sleep=lambda seconds: clock.advance(seconds),
        )
    return _make


@pytest.fixture
def queue(make_queue):
    return make_queue("analytics-aggregates")


@pytest.fixture
def fake_event_client():
    return FakeEventClient()


@pytest.fixture
def realtime_publisher():
    return RealtimePublisher(snapshot_size=20)


@pytest.fixture
def analytics_uow_factory(sqlite_session_factory, fake_event_client, realtime_publisher):
    def _make():
        return AnalyticsUnitOfWork(
            sqlite_session_factory,
            event_client_impl=fake_event_client,
            notifier=realtime_publisher,
        )
    return _make
