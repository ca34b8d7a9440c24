"""
Event processor — ingestion, delivery outcome, counter updates, retry.

Lifecycle of an event:
  1. create_event / bulk_create_events validate and persist it as pending,
     then hand it to the background pool and return immediately
  2. process_event runs the delivery contract
       success → pending|failed → processed, counters applied once
       failure → pending|failed → failed, error_reason recorded
  3. reprocess_failed_events (on demand or every 30 min) retries failures

Exactly-once counters: the state change is a conditional UPDATE; the pixel
increments only run (in the same transaction) when that UPDATE hit a row.
Increments are SQL expressions on the pixel row, never read-modify-write,
so concurrent completions for the same pixel can't lose updates.
"""

import asyncio
import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelwatch.config import get_settings
from pixelwatch.core.analytics import counter_delta
from pixelwatch.core.clock import as_utc, utcnow
from pixelwatch.core.delivery import DELIVERY_WINDOW, EVENT_SOURCES, EVENT_TYPES, EventDeliverer
from pixelwatch.core.errors import ProcessingError, ValidationError
from pixelwatch.core.pool import bounded_gather
from pixelwatch.models.database import get_session_maker
from pixelwatch.models.tables import Event, Pixel
from pixelwatch.services.scope import get_pixel, workspace_pixel_ids

import structlog

logger = structlog.get_logger()

MAX_BULK_EVENTS = 100
MAX_EVENT_NAME_LENGTH = 100
RETRYABLE_STATES = ("pending", "failed")

# process_event outcomes
PROCESSED = "processed"
FAILED = "failed"
ALREADY_PROCESSED = "already_processed"
MISSING = "missing"


def serialize_event(event: Event) -> dict:
    return {
        "id": str(event.id),
        "pixelId": str(event.pixel_id),
        "eventName": event.event_name,
        "eventType": event.event_type,
        "parameters": event.parameters or {},
        "source": event.source,
        "timestamp": as_utc(event.timestamp).isoformat() if event.timestamp else None,
        "processingState": event.processing_state,
        "errorReason": event.error_reason,
    }


def _parse_uuid(value: Any, what: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {what}")


def _parse_timestamp(value: Any) -> datetime.datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return as_utc(datetime.datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise ValidationError("Invalid timestamp; expected ISO-8601")


def normalize_event_payload(raw: dict, default_source: str = "web") -> dict:
    """Validate one inbound event. Raises ValidationError on malformed input."""
    if not isinstance(raw, dict):
        raise ValidationError("Event must be an object")

    name = raw.get("event_name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("event_name is required")
    name = name.strip()
    if len(name) > MAX_EVENT_NAME_LENGTH:
        raise ValidationError(f"event_name exceeds {MAX_EVENT_NAME_LENGTH} characters")

    event_type = raw.get("event_type") or "standard"
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"event_type must be one of: {', '.join(EVENT_TYPES)}")

    source = raw.get("source") or default_source
    if source not in EVENT_SOURCES:
        raise ValidationError(f"source must be one of: {', '.join(EVENT_SOURCES)}")

    parameters = raw.get("parameters")
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, dict):
        raise ValidationError("parameters must be an object")

    return {
        "pixel_id": _parse_uuid(raw.get("pixel_id"), "pixel_id"),
        "event_name": name,
        "event_type": event_type,
        "parameters": parameters,
        "source": source,
        "timestamp": _parse_timestamp(raw.get("timestamp")),
    }


class EventProcessor:
    """Owns the background pool that processes events after ingestion."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        deliverer: EventDeliverer | None = None,
        concurrency: int | None = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or get_session_maker()
        self._deliverer = deliverer or EventDeliverer()
        self._concurrency = concurrency or settings.worker_concurrency
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._tasks: set[asyncio.Task] = set()

    # ─── Ingestion ──────────────────────────────────────────────────

    async def _assert_pixels_in_workspace(self, db: AsyncSession, workspace_id: UUID, pixel_ids: set[UUID]):
        result = await db.execute(
            select(Pixel.id).where(Pixel.id.in_(list(pixel_ids)), Pixel.workspace_id == workspace_id)
        )
        found = set(result.scalars().all())
        if found != pixel_ids:
            raise ValidationError("One or more pixels not found in this workspace")

    async def create_event(self, db: AsyncSession, workspace_id: UUID, payload: dict) -> Event:
        data = normalize_event_payload(payload)
        await self._assert_pixels_in_workspace(db, workspace_id, {data["pixel_id"]})

        event = Event(processing_state="pending", **data)
        db.add(event)
        await db.commit()

        logger.info("event_created", event_id=str(event.id), pixel_id=str(event.pixel_id),
                    event_name=event.event_name)
        self.submit([event.id])
        return event

    async def bulk_create_events(self, db: AsyncSession, workspace_id: UUID, payloads: list) -> dict:
        if not isinstance(payloads, list) or not payloads:
            raise ValidationError("events array is required")
        if len(payloads) > MAX_BULK_EVENTS:
            raise ValidationError(f"Maximum {MAX_BULK_EVENTS} events per batch")

        rows = [normalize_event_payload(p, default_source="server") for p in payloads]
        await self._assert_pixels_in_workspace(db, workspace_id, {r["pixel_id"] for r in rows})

        events = [Event(processing_state="pending", **row) for row in rows]
        db.add_all(events)
        await db.commit()

        logger.info("events_bulk_created", count=len(events), workspace_id=str(workspace_id))
        self.submit([e.id for e in events])
        return {"created": len(events), "events": [serialize_event(e) for e in events]}

    # ─── Background pool ────────────────────────────────────────────

    def submit(self, event_ids: Iterable[UUID]) -> None:
        """Schedule processing without waiting for it."""
        for event_id in event_ids:
            task = asyncio.create_task(self._process_in_background(event_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _process_in_background(self, event_id: UUID):
        async with self._semaphore:
            try:
                await self.process_event(event_id)
            except Exception:
                logger.exception("event_background_processing_crashed", event_id=str(event_id))

    async def drain(self) -> None:
        """Wait for all submitted work (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ─── Processing ─────────────────────────────────────────────────

    async def process_event(self, event_id: UUID) -> str:
        """
        Drive one event to processed/failed. Safe to call repeatedly.

        No session is held during delivery; the outcome is written in a
        fresh session guarded by the conditional state UPDATE.
        """
        async with self._session_factory() as session:
            event = await session.get(Event, event_id)
        if event is None:
            logger.warning("event_missing", event_id=str(event_id))
            return MISSING
        if event.processing_state == "processed":
            return ALREADY_PROCESSED

        reason = None
        try:
            await self._deliverer.deliver(event)
        except ProcessingError as exc:
            reason = exc.message
        except Exception as exc:
            logger.exception("event_delivery_crashed", event_id=str(event.id))
            reason = f"Unexpected error: {exc.__class__.__name__}"

        async with self._session_factory() as session:
            if reason is not None:
                return await self._mark_failed(session, event, reason)
            return await self._mark_processed(session, event)

    async def _mark_failed(self, session: AsyncSession, event: Event, reason: str) -> str:
        result = await session.execute(
            update(Event)
            .where(Event.id == event.id, Event.processing_state.in_(RETRYABLE_STATES))
            .values(processing_state="failed", error_reason=reason[:1000])
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            return ALREADY_PROCESSED
        logger.info("event_failed", event_id=str(event.id), pixel_id=str(event.pixel_id), reason=reason)
        return FAILED

    async def _mark_processed(self, session: AsyncSession, event: Event) -> str:
        now = utcnow()
        result = await session.execute(
            update(Event)
            .where(Event.id == event.id, Event.processing_state.in_(RETRYABLE_STATES))
            .values(processing_state="processed", error_reason=None, processed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # lost the race to a concurrent run; it applied the counters
            await session.rollback()
            return ALREADY_PROCESSED

        delta = counter_delta(event)
        await session.execute(
            update(Pixel)
            .where(Pixel.id == event.pixel_id)
            .values(
                events_count=Pixel.events_count + delta.events_count,
                conversions_count=Pixel.conversions_count + delta.conversions_count,
                revenue_total=Pixel.revenue_total + delta.revenue_total,
                last_activity=now,
            )
            .execution_options(synchronize_session=False)
        )
        # Fresh activity clears an inactivity-only deactivation
        await session.execute(
            update(Pixel)
            .where(Pixel.id == event.pixel_id, Pixel.status_reason == "inactivity")
            .values(status="active", status_reason=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        logger.info("event_processed", event_id=str(event.id), pixel_id=str(event.pixel_id),
                    event_name=event.event_name)
        return PROCESSED

    # ─── Retry ──────────────────────────────────────────────────────

    async def _process_batch(self, event_ids: list[UUID]) -> int:
        results = await bounded_gather(event_ids, self.process_event, self._concurrency)
        for event_id, outcome in zip(event_ids, results):
            if isinstance(outcome, Exception):
                logger.error("event_reprocess_error", event_id=str(event_id), error=str(outcome))
        return sum(1 for outcome in results if outcome == PROCESSED)

    async def reprocess_failed_events(
        self,
        workspace_id: UUID | None = None,
        pixel_id: UUID | None = None,
        limit: int = 100,
    ) -> dict:
        """
        Retry up to `limit` failed events. Returns {totalFailed, reprocessed}.

        totalFailed counts every failed event in scope. Only events still
        inside the delivery window are picked; older ones can never succeed
        and stay failed until retention removes them.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        async with self._session_factory() as session:
            conditions = [Event.processing_state == "failed"]
            if pixel_id is not None:
                conditions.append(Event.pixel_id == pixel_id)
            if workspace_id is not None:
                if pixel_id is not None:
                    await get_pixel(session, workspace_id, pixel_id)
                conditions.append(Event.pixel_id.in_(workspace_pixel_ids(workspace_id)))
            retryable = [*conditions, Event.timestamp >= utcnow() - DELIVERY_WINDOW]

            total_failed = await session.scalar(select(func.count(Event.id)).where(*conditions)) or 0
            total_retryable = await session.scalar(select(func.count(Event.id)).where(*retryable)) or 0
            result = await session.execute(
                select(Event.id).where(*retryable).order_by(Event.timestamp, Event.id).limit(limit)
            )
            event_ids = list(result.scalars().all())

        reprocessed = await self._process_batch(event_ids)
        logger.info("failed_events_reprocessed", total_failed=total_failed, attempted=len(event_ids),
                    reprocessed=reprocessed, expired=total_failed - total_retryable,
                    workspace_id=str(workspace_id) if workspace_id else None,
                    pixel_id=str(pixel_id) if pixel_id else None)
        return {"totalFailed": total_failed, "reprocessed": reprocessed}

    async def process_stale_pending(self, older_than: datetime.timedelta, limit: int = 100) -> int:
        """Pick up pending events whose background task never ran (e.g. restart)."""
        cutoff = utcnow() - older_than
        async with self._session_factory() as session:
            result = await session.execute(
                select(Event.id)
                .where(Event.processing_state == "pending", Event.created_at < cutoff)
                .order_by(Event.created_at, Event.id)
                .limit(limit)
            )
            event_ids = list(result.scalars().all())
        if not event_ids:
            return 0
        processed = await self._process_batch(event_ids)
        logger.info("stale_pending_processed", attempted=len(event_ids), processed=processed)
        return processed
