"""
Webhook Ingestion API - Thin API with Command Dispatch
API verifies the signature at the boundary and dispatches commands through the message bus
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel
from sqlalchemy import create_engine

import config
from ingestion.adapters import orm
from ingestion.adapters.signature import SignatureVerifier
from ingestion.domain.commands import EmitPendingChanges, IngestWebhook, ResyncChanges
from ingestion.service_layer import messagebus, views
from ingestion.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from shared.domain.errors import AuthError, MalformedPayload, WriteError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize ORM mappers (Cosmic Python pattern)
orm.start_mappers()


@asynccontextmanager
async def lifespan(app: FastAPI):
    orm.metadata.create_all(create_engine(config.get_postgres_uri()))
    logger.info("Event store schema initialized")
    yield


app = FastAPI(
    title="CV Analytics Ingestion API",
    description="Signed webhook ingestion into the durable event store",
    version="1.0.0",
    lifespan=lifespan,
)

SOURCE_PATTERN = r"^[a-z0-9][a-z0-9_-]{0,63}$"


class IngestionResponse(BaseModel):
    """Response model for successful ingestion"""
    status: str
    event_key: str
    received_at: str


class ResyncResponse(BaseModel):
    partition: str
    emitted: int


def get_uow():
    return SqlAlchemyUnitOfWork()


def get_verifier() -> SignatureVerifier:
    primary, secondary = config.get_webhook_secrets()
    return SignatureVerifier(
        primary_secret=primary,
        secondary_secret=secondary,
        tolerance_seconds=config.get_signature_header()["tolerance_seconds"],
    )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "cv-analytics-ingestion-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/webhooks/{source}", response_model=IngestionResponse)
async def receive_webhook(
    request: Request,
    source: str = Path(..., pattern=SOURCE_PATTERN),
    verifier: SignatureVerifier = Depends(get_verifier),
    uow=Depends(get_uow),
):
    """
    Receive a signed webhook.

    The signature is checked over the exact request bytes before anything is
    trusted. 401 on authentication failure, 400 on a malformed body, 500 when
    the event store is unavailable so the sender retries the delivery.
    """
    headers = config.get_signature_header()
    raw_body = await request.body()
    received_at = datetime.now(timezone.utc)

    try:
        verified = verifier.verify(raw_body, request.headers.get(headers["signature"]), source=source)
    except AuthError:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    except MalformedPayload as e:
        raise HTTPException(status_code=400, detail=str(e))

    cmd = IngestWebhook(
        source=source,
        verified=verified,
        delivery_id=request.headers.get(headers["delivery_id"]),
        received_at=received_at,
    )

    try:
        results = await run_in_threadpool(messagebus.handle, cmd, uow)
    except WriteError as e:
        logger.error(f"Failed to store webhook from {source}: {e}")
        raise HTTPException(status_code=500, detail="Event store unavailable")

    event_key = results[0]
    logger.info(f"Accepted webhook from {source} as {event_key}")

    return IngestionResponse(
        status="accepted",
        event_key=event_key,
        received_at=received_at.isoformat(),
    )


@app.get("/api/v1/events/{event_key:path}")
def get_event_endpoint(event_key: str, uow=Depends(get_uow)):
    """Retrieve a stored event by its key."""
    event_data = views.get_event(event_key, uow)

    if event_data is None:
        raise HTTPException(status_code=404, detail=f"Event {event_key} not found")

    return event_data


@app.get("/api/v1/correlations/{correlation_id}/events")
def list_correlation_events_endpoint(correlation_id: str, uow=Depends(get_uow)):
    """All stored events for a correlation key, oldest first."""
    events = views.list_correlation_events(correlation_id, uow)
    return {
        "correlation_id": correlation_id,
        "count": len(events),
        "events": events,
    }


@app.post("/api/v1/changes/{partition}/resync", response_model=ResyncResponse)
def resync_changes_endpoint(
    partition: str,
    after_sequence: int = 0,
    after_position: Optional[str] = None,
    uow=Depends(get_uow),
):
    """Re-emit change notifications for a partition, for consumers past the retention window."""
    command = ResyncChanges(partition=partition, after_sequence=after_sequence, after_position=after_position)
    results = messagebus.handle(command, uow)
    return ResyncResponse(partition=partition, emitted=results[0])


@app.post("/api/v1/changes/emit-pending")
def emit_pending_changes_endpoint(partition: Optional[str] = None, uow=Depends(get_uow)):
    """Emit change notifications for stored events whose capture failed."""
    results = messagebus.handle(EmitPendingChanges(partition=partition), uow)
    return {"emitted": results[0]}
