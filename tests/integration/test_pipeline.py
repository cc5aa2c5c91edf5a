"""
End-to-end pipeline on SQLite and in-memory streams:
webhook -> event store -> change stream -> router -> queue -> batch processor -> aggregates.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from analytics.adapters.event_client import AbstractEventClient
from analytics.adapters.orm import correlation_entries
from analytics.service_layer import correlation, views as analytics_views
from analytics.service_layer.batch_processor import BatchProcessor
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork as AnalyticsUnitOfWork
from changefeed.adapters.stream import InMemoryCheckpointStore
from changefeed.entrypoints.router_worker import RouterWorker
from changefeed.service_layer.router import EventRouter
from ingestion.adapters.signature import VerifiedEvent
from ingestion.domain.commands import IngestWebhook
from ingestion.entrypoints.change_sweeper import ChangeSweeper
from ingestion.service_layer import messagebus as ingestion_bus, views as ingestion_views
from ingestion.service_layer.unit_of_work import SqlAlchemyUnitOfWork as IngestionUnitOfWork
from shared.domain.errors import TerminalProcessingError

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class EventStoreClient(AbstractEventClient):
    """Reads stored events straight from the ingestion views instead of over HTTP."""

    def __init__(self, ingestion_uow):
        self.ingestion_uow = ingestion_uow

    def get_event(self, event_key):
        data = ingestion_views.get_event(event_key, self.ingestion_uow)
        if data is None:
            raise TerminalProcessingError(f"Cannot fetch event {event_key}: HTTP 404")
        return self._parse(data)

    def list_events_for_correlation(self, correlation_id):
        return [self._parse(e) for e in ingestion_views.list_correlation_events(correlation_id, self.ingestion_uow)]

    @staticmethod
    def _parse(data):
        return dict(data, received_at=datetime.fromisoformat(data["received_at"]))


class BrokenStream:
    def append(self, notification):
        raise ConnectionError("redis is down")


class Pipeline:

    def __init__(self, ingestion_uow, change_stream, checkpoints, queue, sqlite_session_factory, publisher):
        self.ingestion_uow = ingestion_uow
        self.change_stream = change_stream
        self.queue = queue
        self.router_worker = RouterWorker(change_stream, checkpoints, EventRouter.from_config(lambda name: queue))
        event_client = EventStoreClient(ingestion_uow)
        self.uow_factory = lambda: AnalyticsUnitOfWork(
            sqlite_session_factory, event_client_impl=event_client, notifier=publisher
        )
        self.processor = BatchProcessor(queue, self.uow_factory, sleep=lambda s: None)

    def ingest(self, payload, source="cv-assistant", delivery_id=None, received_at=T0, uow=None):
        raw = json.dumps(payload).encode("utf-8")
        verified = VerifiedEvent(raw_body=raw, payload=payload, signature="sha256=00", verified_at=received_at)
        cmd = IngestWebhook(source=source, verified=verified, delivery_id=delivery_id, received_at=received_at)
        return ingestion_bus.handle(cmd, uow or self.ingestion_uow)[0]

    def run(self):
        self.router_worker.run_once()
        results = []
        while True:
            messages = self.queue.receive_batch()
            if not messages:
                return results
            results.append(self.processor.process_batch(messages))

    def aggregate(self, key="2024-05-01"):
        return analytics_views.get_aggregate(key, self.uow_factory())

    def timeline(self, correlation_id):
        return [e.record_ref for e in correlation.timeline(self.uow_factory(), correlation_id)]


@pytest.fixture
def pipeline(ingestion_uow, change_stream, checkpoints, queue, sqlite_session_factory, realtime_publisher):
    return Pipeline(ingestion_uow, change_stream, checkpoints, queue, sqlite_session_factory, realtime_publisher)


def test_webhook_reaches_aggregate_and_timeline(pipeline, realtime_publisher):
    updates = []
    realtime_publisher.subscribe(updates.append)
    query = pipeline.ingest({"eventType": "query", "requestId": "r-1", "performance": {"cacheHit": True}})
    response = pipeline.ingest(
        {"eventType": "response", "requestId": "r-1", "matchType": "full", "matchScore": 88},
        received_at=T0 + timedelta(seconds=2),
    )

    pipeline.run()

    record = pipeline.aggregate()
    assert record["count"] == 2
    assert record["derived_fields"]["events_by_type"] == {"query": 1, "response": 1}
    assert record["derived_fields"]["match_types"] == {"full": 1}
    assert record["derived_fields"]["cache_hits"] == 1
    assert pipeline.timeline("r-1") == [query, response]
    assert [u.count for u in updates] == [1, 2]


def test_duplicate_delivery_counts_once(pipeline):
    pipeline.ingest({"eventType": "query", "requestId": "r-1"}, delivery_id="d-1")
    pipeline.ingest({"eventType": "query", "requestId": "r-1"}, delivery_id="d-1")

    pipeline.run()

    assert pipeline.aggregate()["count"] == 1


def test_replayed_changes_do_not_double_count(pipeline, change_stream, queue, clock):
    pipeline.ingest({"eventType": "query", "requestId": "r-1"})
    pipeline.run()

    # A router that lost its checkpoint replays the partition after the queue dedup window
    clock.advance(301)
    replay = RouterWorker(change_stream, InMemoryCheckpointStore(),
                          EventRouter.from_config(lambda name: queue))
    assert replay.run_once() == 1
    pipeline.run()

    assert pipeline.aggregate()["count"] == 1


def test_events_land_in_their_utc_day(pipeline):
    pipeline.ingest({"eventType": "query", "requestId": "r-1"}, received_at=T0)
    pipeline.ingest({"eventType": "query", "requestId": "r-2"}, received_at=T0 + timedelta(days=1))

    pipeline.run()

    assert pipeline.aggregate("2024-05-01")["count"] == 1
    assert pipeline.aggregate("2024-05-02")["count"] == 1


def test_rebuild_restores_lost_timeline(pipeline, sqlite_session_factory):
    first = pipeline.ingest({"eventType": "query", "requestId": "r-1"})
    second = pipeline.ingest({"eventType": "response", "requestId": "r-1"}, received_at=T0 + timedelta(seconds=1))
    pipeline.run()

    with sqlite_session_factory() as session:
        session.execute(
            correlation_entries.delete().where(correlation_entries.c.record_ref == second)
        )
        session.commit()
    assert pipeline.timeline("r-1") == [first]

    uow = pipeline.uow_factory()
    assert correlation.rebuild(uow, "r-1", uow.event_client) == 1
    assert pipeline.timeline("r-1") == [first, second]


def test_failed_change_capture_is_delivered_after_sweep(pipeline, ingestion_uow, sqlite_session_factory):
    broken = IngestionUnitOfWork(sqlite_session_factory, change_stream=BrokenStream())
    pipeline.ingest({"eventType": "query", "requestId": "r-1"}, uow=broken)
    pipeline.run()
    assert pipeline.aggregate() is None

    assert ChangeSweeper(ingestion_uow).run_once() == 1
    pipeline.run()

    assert pipeline.aggregate()["count"] == 1
    assert ChangeSweeper(ingestion_uow).run_once() == 0
