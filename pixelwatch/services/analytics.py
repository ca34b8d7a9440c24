"""
Analytics queries and the hourly full recompute.

Query functions load the scoped event slice and hand it to the pure
aggregation in core/analytics.py. A failed query raises AggregationError.

generate_analytics() rebuilds every pixel's counters and every conversion's
summary from raw events. It writes absolute values, so running it twice
over the same data changes nothing.
"""

import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelwatch.config import get_settings
from pixelwatch.core import analytics as agg
from pixelwatch.core.clock import as_utc, utcnow
from pixelwatch.core.errors import AggregationError
from pixelwatch.core.pool import bounded_gather
from pixelwatch.core.rules import parse_number, rules_from_json
from pixelwatch.models.database import get_session_maker
from pixelwatch.models.tables import Conversion, Event, Pixel
from pixelwatch.services.scope import get_conversion, get_pixel, workspace_pixel_ids

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEFRAME = "7d"
REALTIME_WINDOW = datetime.timedelta(minutes=15)


async def _load_events(db: AsyncSession, query, what: str) -> list[Event]:
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        logger.error("analytics_query_failed", query=what, error=str(exc))
        raise AggregationError(f"Failed to fetch {what} analytics")
    return list(result.scalars().all())


def _window_query(workspace_id: UUID, start: datetime.datetime, end: datetime.datetime):
    return (
        select(Event)
        .where(
            Event.pixel_id.in_(workspace_pixel_ids(workspace_id)),
            Event.timestamp >= start,
            Event.timestamp <= end,
        )
        .order_by(Event.timestamp, Event.id)
    )


async def get_events_analytics(
    db: AsyncSession,
    workspace_id: UUID,
    timeframe: str = DEFAULT_TIMEFRAME,
    pixel_id: UUID | None = None,
    event_name: str | None = None,
) -> dict:
    start, end = agg.timeframe_window(timeframe, utcnow())
    query = _window_query(workspace_id, start, end)
    if pixel_id:
        await get_pixel(db, workspace_id, pixel_id)
        query = query.where(Event.pixel_id == pixel_id)
    if event_name:
        query = query.where(Event.event_name == event_name)

    events = await _load_events(db, query, "events")
    return {
        "timeframe": timeframe,
        "summary": agg.events_summary(events),
        "trends": {
            "eventsByHour": agg.group_by_hour(events),
            "eventsByDay": agg.group_by_day(events),
            "eventsByType": agg.group_by_type(events),
        },
        "topEvents": agg.top_events(events, 10),
    }


async def get_conversion_analytics(
    db: AsyncSession,
    workspace_id: UUID,
    conversion_id: UUID,
    timeframe: str = DEFAULT_TIMEFRAME,
) -> dict:
    conversion = await get_conversion(db, workspace_id, conversion_id)
    start, end = agg.timeframe_window(timeframe, utcnow())
    query = (
        select(Event)
        .where(
            Event.pixel_id == conversion.pixel_id,
            Event.event_name == conversion.event_name,
            Event.timestamp >= start,
            Event.timestamp <= end,
        )
        .order_by(Event.timestamp, Event.id)
    )
    events = await _load_events(db, query, "conversion")
    result = agg.conversion_analytics(events, rules_from_json(conversion.rules))
    return {"conversionId": str(conversion.id), "timeframe": timeframe, **result}


async def get_funnel_analytics(
    db: AsyncSession,
    workspace_id: UUID,
    timeframe: str = DEFAULT_TIMEFRAME,
    pixel_id: UUID | None = None,
    steps: tuple[agg.FunnelStep, ...] = agg.DEFAULT_FUNNEL_STEPS,
) -> dict:
    start, end = agg.timeframe_window(timeframe, utcnow())
    query = _window_query(workspace_id, start, end).where(
        Event.event_name.in_([step.event_name for step in steps])
    )
    if pixel_id:
        await get_pixel(db, workspace_id, pixel_id)
        query = query.where(Event.pixel_id == pixel_id)

    events = await _load_events(db, query, "funnel")
    return {"timeframe": timeframe, **agg.funnel(steps, events)}


async def get_revenue_analytics(db: AsyncSession, workspace_id: UUID, timeframe: str = DEFAULT_TIMEFRAME) -> dict:
    start, end = agg.timeframe_window(timeframe, utcnow())
    query = _window_query(workspace_id, start, end).where(Event.event_name == agg.PURCHASE)
    events = await _load_events(db, query, "revenue")
    return {"timeframe": timeframe, **agg.revenue_summary(events)}


async def get_realtime_analytics(db: AsyncSession, workspace_id: UUID) -> dict:
    now = utcnow()
    query = (
        select(Event, Pixel.name)
        .join(Pixel, Pixel.id == Event.pixel_id)
        .where(Pixel.workspace_id == workspace_id, Event.timestamp >= now - REALTIME_WINDOW, Event.timestamp <= now)
        .order_by(Event.timestamp.desc(), Event.id)
    )
    try:
        rows = (await db.execute(query)).all()
    except SQLAlchemyError as exc:
        logger.error("analytics_query_failed", query="realtime", error=str(exc))
        raise AggregationError("Failed to fetch realtime analytics")

    events = [event for event, _ in rows]
    return {
        "totalEvents": len(events),
        "eventsPerMinute": agg.group_by_minute(events),
        "topEvents": agg.top_events(events, 5),
        "recentEvents": [
            {
                "eventName": event.event_name,
                "timestamp": as_utc(event.timestamp).isoformat(),
                "pixelName": pixel_name,
                "value": parse_number((event.parameters or {}).get("value")),
            }
            for event, pixel_name in rows[:10]
        ],
    }


# ---------------------------------------------------------------------------
# Scheduled recompute
# ---------------------------------------------------------------------------

async def recompute_pixel(session_factory: async_sessionmaker[AsyncSession], pixel_id: UUID) -> dict:
    """
    Rebuild one pixel's rollups and its conversions' summaries.

    The pixel row is written first so the transaction holds its lock while
    the events are read. A concurrent completion blocks on its counter
    increment until this commits, then increments on top of the rebuilt
    values; it was not yet committed when the events were read, so it is
    counted exactly once.
    """
    async with session_factory() as session:
        try:
            await session.execute(
                update(Pixel)
                .where(Pixel.id == pixel_id)
                .values(updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(select(Event).where(Event.pixel_id == pixel_id))
            events = list(result.scalars().all())
            result = await session.execute(select(Conversion).where(Conversion.pixel_id == pixel_id))
            conversions = list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise AggregationError(f"Failed to load events for pixel {pixel_id}: {exc}")

        counters = agg.reduce_pixel_counters(events)
        await session.execute(
            update(Pixel)
            .where(Pixel.id == pixel_id)
            .values(
                events_count=counters.events_count,
                conversions_count=counters.conversions_count,
                revenue_total=counters.revenue_total,
            )
            .execution_options(synchronize_session=False)
        )

        for conversion in conversions:
            summary = agg.conversion_summary(events, conversion.event_name, rules_from_json(conversion.rules))
            conversion.total_conversions = summary.total_conversions
            conversion.total_value = summary.total_value
            conversion.average_value = summary.average_value
            conversion.conversion_rate = summary.conversion_rate

        await session.commit()

    return {"pixel_id": str(pixel_id), "events": counters.events_count, "conversions": len(conversions)}


async def generate_analytics(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    concurrency: int | None = None,
) -> dict:
    session_factory = session_factory or get_session_maker()
    concurrency = concurrency or get_settings().worker_concurrency

    async with session_factory() as session:
        try:
            result = await session.execute(select(Pixel.id).order_by(Pixel.id))
        except SQLAlchemyError as exc:
            raise AggregationError(f"Failed to list pixels: {exc}")
        pixel_ids = list(result.scalars().all())

    results = await bounded_gather(pixel_ids, lambda pid: recompute_pixel(session_factory, pid), concurrency)
    failed = 0
    for pixel_id, outcome in zip(pixel_ids, results):
        if isinstance(outcome, Exception):
            failed += 1
            logger.error("analytics_pixel_failed", pixel_id=str(pixel_id), error=str(outcome))

    summary = {"pixels": len(pixel_ids), "succeeded": len(pixel_ids) - failed, "failed": failed}
    logger.info("analytics_generated", **summary)
    return summary
