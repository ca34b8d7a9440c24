"""
Event ingestion API.

Ingestion persists the event as pending and returns right away; delivery
and counter updates happen on the processor's background pool.

Security:
  - Requires a workspace API key
  - Every pixel_id in the payload must belong to the key's workspace
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.config import get_settings
from pixelwatch.middleware.auth import AuthContext, require_auth
from pixelwatch.models.database import get_db
from pixelwatch.services.events import EventProcessor, serialize_event

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/events", tags=["events"])


# --- Request schemas ---

class EventPayload(BaseModel):
    pixel_id: str
    event_name: str
    event_type: str | None = None
    parameters: dict | None = None
    source: str | None = None
    timestamp: str | None = None


class BulkEventsPayload(BaseModel):
    events: list[EventPayload]


class ReprocessPayload(BaseModel):
    pixel_id: UUID | None = None
    limit: int | None = Field(None, ge=1, le=1000)


def get_processor(request: Request) -> EventProcessor:
    return request.app.state.processor


# --- Endpoints ---

@router.post("", status_code=201)
async def create_event(
    payload: EventPayload,
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    processor: EventProcessor = Depends(get_processor),
):
    event = await processor.create_event(db, auth.workspace_id, payload.model_dump(exclude_none=True))
    return serialize_event(event)


@router.post("/bulk", status_code=201)
async def bulk_create_events(
    payload: BulkEventsPayload,
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    processor: EventProcessor = Depends(get_processor),
):
    return await processor.bulk_create_events(
        db, auth.workspace_id, [e.model_dump(exclude_none=True) for e in payload.events]
    )


@router.post("/reprocess")
async def reprocess_failed_events(
    payload: ReprocessPayload,
    auth: AuthContext = Depends(require_auth),
    processor: EventProcessor = Depends(get_processor),
):
    limit = payload.limit or get_settings().reprocess_batch_limit
    return await processor.reprocess_failed_events(
        workspace_id=auth.workspace_id, pixel_id=payload.pixel_id, limit=limit
    )
