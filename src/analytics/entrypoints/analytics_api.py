"""
Analytics API - read models, correlation timelines, queue operations and live updates
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy import create_engine

import config
from analytics.adapters import orm as analytics_orm
from analytics.adapters.realtime import RealtimePublisher, RedisBridge
from analytics.domain.commands import RebuildCorrelation
from analytics.service_layer import messagebus, views
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from queueing.adapters import orm as queueing_orm
from queueing.service_layer.queue import DurableQueue
from shared.domain.errors import MessageNotFound, TerminalProcessingError, TransientProcessingError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize ORM mappers (Cosmic Python pattern)
analytics_orm.start_mappers()
queueing_orm.start_mappers()

realtime_config = config.get_realtime_config()
publisher = RealtimePublisher(snapshot_size=realtime_config["snapshot_size"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_engine(config.get_postgres_uri())
    analytics_orm.metadata.create_all(engine)
    queueing_orm.metadata.create_all(engine)
    bridge = RedisBridge(
        client=redis.Redis(**config.get_redis_host_and_port()),
        channel=realtime_config["channel"],
        publisher=publisher,
    )
    try:
        bridge.start()
    except redis.RedisError as e:
        logger.error(f"Live aggregate updates unavailable, cannot subscribe to Redis: {e}")
    yield
    bridge.stop()


app = FastAPI(
    title="CV Analytics API",
    description="Aggregates, correlation timelines, queue operations and live aggregate updates",
    version="1.0.0",
    lifespan=lifespan,
)


class RebuildResponse(BaseModel):
    correlation_id: str
    added: int


class RedriveResponse(BaseModel):
    message_id: str
    queue: str
    status: str


def get_uow():
    return SqlAlchemyUnitOfWork()


def get_queue_factory():
    return DurableQueue


def get_publisher() -> RealtimePublisher:
    return publisher


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "cv-analytics-api",
        "live_subscribers": publisher.subscriber_count,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/api/v1/aggregates")
def list_aggregates_endpoint(limit: int = Query(100, ge=1, le=1000), uow=Depends(get_uow)):
    aggregates = views.list_aggregates(uow, limit)
    return {"count": len(aggregates), "aggregates": aggregates}


@app.get("/api/v1/aggregates/{aggregate_key}")
def get_aggregate_endpoint(aggregate_key: str, uow=Depends(get_uow)):
    aggregate = views.get_aggregate(aggregate_key, uow)
    if aggregate is None:
        raise HTTPException(status_code=404, detail=f"Aggregate {aggregate_key} not found")
    return aggregate


@app.get("/api/v1/correlations/{correlation_id}/timeline")
def get_timeline_endpoint(correlation_id: str, uow=Depends(get_uow)):
    """Processed events for a correlation id ordered by (received_at, sequence_hint)."""
    entries = views.get_timeline(correlation_id, uow)
    return {
        "correlation_id": correlation_id,
        "count": len(entries),
        "entries": entries,
    }


@app.post("/api/v1/correlations/{correlation_id}/rebuild", response_model=RebuildResponse)
def rebuild_timeline_endpoint(correlation_id: str, uow=Depends(get_uow)):
    """Restore missing timeline entries from the event store."""
    try:
        results = messagebus.handle(RebuildCorrelation(correlation_id=correlation_id), uow)
    except (TransientProcessingError, TerminalProcessingError) as e:
        raise HTTPException(status_code=502, detail=f"Event store unavailable: {e}")
    return RebuildResponse(correlation_id=correlation_id, added=results[0])


@app.get("/api/v1/queues/{queue_name}")
def queue_depth_endpoint(queue_name: str, queue_factory=Depends(get_queue_factory)):
    return {"queue": queue_name, **queue_factory(queue_name).depth()}


@app.get("/api/v1/queues/{queue_name}/dead-letters")
def list_dead_letters_endpoint(
    queue_name: str,
    limit: int = Query(100, ge=1, le=1000),
    queue_factory=Depends(get_queue_factory),
):
    """Messages that exhausted their receives, for manual inspection."""
    messages = [views.serialize_dead_letter(m) for m in queue_factory(queue_name).dead_letters(limit)]
    return {"queue": queue_name, "count": len(messages), "messages": messages}


@app.post("/api/v1/queues/{queue_name}/dead-letters/{message_id}/redrive", response_model=RedriveResponse)
def redrive_endpoint(queue_name: str, message_id: str, queue_factory=Depends(get_queue_factory)):
    try:
        queue_factory(queue_name).redrive(message_id)
    except MessageNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return RedriveResponse(message_id=message_id, queue=queue_name, status="redriven")


@app.websocket("/ws/aggregates")
async def aggregates_socket(websocket: WebSocket, live: RealtimePublisher = Depends(get_publisher)):
    """Recent aggregate updates first, then live ones, until the client disconnects."""
    await websocket.accept()
    loop = asyncio.get_running_loop()
    updates = asyncio.Queue()  # type: asyncio.Queue

    subscription = live.subscribe(lambda update: loop.call_soon_threadsafe(updates.put_nowait, update))
    sender = asyncio.create_task(_forward(websocket, updates))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Subscriber {subscription.subscription_id} disconnected")
    finally:
        live.unsubscribe(subscription)
        sender.cancel()


async def _forward(websocket: WebSocket, updates: asyncio.Queue):
    while True:
        update = await updates.get()
        await websocket.send_json(jsonable_encoder(update))
