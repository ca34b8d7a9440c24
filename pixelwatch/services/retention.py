"""Daily cleanup: old events and diagnostics, test traffic, silent pixels."""

import datetime

from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelwatch.config import get_settings
from pixelwatch.core.clock import utcnow
from pixelwatch.models.database import get_session_maker
from pixelwatch.models.tables import Diagnostic, Event, Pixel

import structlog

logger = structlog.get_logger()

TEST_EVENT_NAME = "TestEvent"


async def cleanup(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    now: datetime.datetime | None = None,
) -> dict:
    settings = get_settings()
    session_factory = session_factory or get_session_maker()
    now = now or utcnow()

    event_cutoff = now - datetime.timedelta(days=settings.event_retention_days)
    diagnostic_cutoff = now - datetime.timedelta(days=settings.diagnostic_retention_days)
    test_cutoff = now - datetime.timedelta(minutes=settings.test_event_retention_minutes)
    inactive_cutoff = now - datetime.timedelta(days=settings.inactivity_days)

    async with session_factory() as session:
        old_events = await session.execute(
            delete(Event).where(Event.timestamp < event_cutoff).execution_options(synchronize_session=False)
        )
        old_diagnostics = await session.execute(
            delete(Diagnostic)
            .where(Diagnostic.status == "resolved", Diagnostic.resolved_at < diagnostic_cutoff)
            .execution_options(synchronize_session=False)
        )
        test_events = await session.execute(
            delete(Event)
            .where(Event.event_name == TEST_EVENT_NAME, Event.timestamp < test_cutoff)
            .execution_options(synchronize_session=False)
        )
        deactivated = await session.execute(
            update(Pixel)
            .where(
                Pixel.status == "active",
                or_(Pixel.last_activity.is_(None), Pixel.last_activity < inactive_cutoff),
            )
            .values(status="inactive", status_reason="inactivity")
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    summary = {
        "events_deleted": old_events.rowcount,
        "diagnostics_deleted": old_diagnostics.rowcount,
        "test_events_deleted": test_events.rowcount,
        "pixels_deactivated": deactivated.rowcount,
    }
    logger.info("retention_cleanup_completed", **summary)
    return summary
