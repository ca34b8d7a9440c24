"""Tests for workspace analytics queries and the full recompute."""

import asyncio
import datetime
from contextlib import asynccontextmanager
from uuid import uuid4

import pytest
from sqlalchemy import update

from conftest import add_events, make_conversion, make_pixel, make_workspace
from pixelwatch.core.clock import utcnow
from pixelwatch.core.errors import NotFoundError, ValidationError
from pixelwatch.models.tables import Conversion, Pixel
from pixelwatch.services import analytics
from pixelwatch.services.events import EventProcessor


async def _workspace_with_pixel(db):
    workspace = await make_workspace(db)
    return workspace, await make_pixel(db, workspace)


class TestEventsAnalytics:
    @pytest.mark.asyncio
    async def test_summary_and_trends(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        await add_events(db, pixel, 3, "PageView")
        await add_events(db, pixel, 1, "Lead", state="failed")
        await add_events(db, pixel, 2, "PageView", timestamp=utcnow() - datetime.timedelta(days=10))

        result = await analytics.get_events_analytics(db, workspace.id, "7d")

        assert result["summary"]["totalEvents"] == 4
        assert result["summary"]["processedEvents"] == 3
        assert result["summary"]["failedEvents"] == 1
        assert result["summary"]["successRate"] == 75.0
        assert result["trends"]["eventsByType"] == {"PageView": 3, "Lead": 1}
        assert sum(result["trends"]["eventsByDay"].values()) == 4
        assert result["topEvents"][0] == {"name": "PageView", "count": 3}

    @pytest.mark.asyncio
    async def test_other_workspaces_are_invisible(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        other = await make_workspace(db, "Other")
        await add_events(db, await make_pixel(db, other), 5, "PageView")
        await add_events(db, pixel, 1, "PageView")

        result = await analytics.get_events_analytics(db, workspace.id)
        assert result["summary"]["totalEvents"] == 1

    @pytest.mark.asyncio
    async def test_pixel_and_name_filters(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        second = await make_pixel(db, workspace, name="Blog")
        await add_events(db, pixel, 2, "PageView")
        await add_events(db, pixel, 1, "Lead")
        await add_events(db, second, 4, "PageView")

        result = await analytics.get_events_analytics(db, workspace.id, "24h", pixel_id=pixel.id, event_name="PageView")
        assert result["summary"]["totalEvents"] == 2

    @pytest.mark.asyncio
    async def test_foreign_pixel_filter_is_not_found(self, db):
        workspace, _ = await _workspace_with_pixel(db)
        foreign = await make_pixel(db, await make_workspace(db, "Other"))
        with pytest.raises(NotFoundError):
            await analytics.get_events_analytics(db, workspace.id, pixel_id=foreign.id)

    @pytest.mark.asyncio
    async def test_bad_timeframe(self, db):
        workspace, _ = await _workspace_with_pixel(db)
        with pytest.raises(ValidationError):
            await analytics.get_events_analytics(db, workspace.id, "1y")


class TestConversionAndFunnel:
    @pytest.mark.asyncio
    async def test_conversion_analytics_applies_rules(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        conversion = await make_conversion(db, pixel, "Purchase", rules=[
            {"type": "parameter", "operator": "greater_than", "field": "value", "value": 50},
        ])
        await add_events(db, pixel, 2, "Purchase", parameters={"value": 80, "currency": "USD"})
        await add_events(db, pixel, 3, "Purchase", parameters={"value": 20, "currency": "USD"})
        await add_events(db, pixel, 4, "PageView")

        result = await analytics.get_conversion_analytics(db, workspace.id, conversion.id, "7d")
        assert result["conversionId"] == str(conversion.id)
        assert result["totalConversions"] == 2
        assert result["totalValue"] == 160.0
        assert result["averageValue"] == 80.0

    @pytest.mark.asyncio
    async def test_conversion_from_other_workspace(self, db):
        workspace, _ = await _workspace_with_pixel(db)
        foreign_pixel = await make_pixel(db, await make_workspace(db, "Other"))
        conversion = await make_conversion(db, foreign_pixel)

        with pytest.raises(NotFoundError):
            await analytics.get_conversion_analytics(db, workspace.id, conversion.id)
        with pytest.raises(NotFoundError):
            await analytics.get_conversion_analytics(db, workspace.id, uuid4())

    @pytest.mark.asyncio
    async def test_funnel(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        for name, count in (("PageView", 20), ("ViewContent", 10), ("AddToCart", 4),
                            ("InitiateCheckout", 2), ("Purchase", 1), ("Lead", 7)):
            await add_events(db, pixel, count, name)

        result = await analytics.get_funnel_analytics(db, workspace.id, "24h")
        assert [s["count"] for s in result["steps"]] == [20, 10, 4, 2, 1]
        assert [s["conversionRate"] for s in result["steps"]] == [100.0, 50.0, 40.0, 50.0, 50.0]
        assert result["overallConversionRate"] == 5.0

    @pytest.mark.asyncio
    async def test_revenue_and_realtime(self, db):
        workspace, pixel = await _workspace_with_pixel(db)
        await add_events(db, pixel, 2, "Purchase", parameters={"value": "12.5", "currency": "USD"},
                         timestamp=utcnow() - datetime.timedelta(minutes=2))
        await add_events(db, pixel, 1, "PageView", timestamp=utcnow() - datetime.timedelta(hours=2))

        revenue = await analytics.get_revenue_analytics(db, workspace.id, "24h")
        assert revenue["totalRevenue"] == 25.0
        assert revenue["totalOrders"] == 2
        assert revenue["averageOrderValue"] == 12.5

        realtime = await analytics.get_realtime_analytics(db, workspace.id)
        assert realtime["totalEvents"] == 2
        assert sum(realtime["eventsPerMinute"].values()) == 2
        assert realtime["recentEvents"][0]["pixelName"] == pixel.name
        assert realtime["recentEvents"][0]["value"] == 12.5


class TestGenerateAnalytics:
    @pytest.mark.asyncio
    async def test_recompute_matches_incremental_counters(self, session_factory, db):
        _, pixel = await _workspace_with_pixel(db)
        await add_events(db, pixel, 3, "PageView", state="pending")
        await add_events(db, pixel, 2, "Purchase", state="pending", parameters={"value": 19.99, "currency": "USD"})
        await add_events(db, pixel, 1, "Purchase", state="pending", parameters={"value": -1})
        processor = EventProcessor(session_factory)
        await processor.process_stale_pending(datetime.timedelta(minutes=-5))

        async with session_factory() as session:
            incremental = await session.get(Pixel, pixel.id)
            before = (incremental.events_count, incremental.conversions_count, incremental.revenue_total)

        await analytics.generate_analytics(session_factory)

        async with session_factory() as session:
            recomputed = await session.get(Pixel, pixel.id)
            after = (recomputed.events_count, recomputed.conversions_count, recomputed.revenue_total)

        assert before[:2] == after[:2] == (5, 2)
        assert after[2] == pytest.approx(before[2])
        assert after[2] == pytest.approx(39.98)

    @pytest.mark.asyncio
    async def test_recompute_repairs_drift_and_is_idempotent(self, session_factory, db):
        _, pixel = await _workspace_with_pixel(db)
        await add_events(db, pixel, 4, "PageView")
        await add_events(db, pixel, 1, "Purchase", parameters={"value": 100, "currency": "USD"})
        await add_events(db, pixel, 2, "Purchase", state="failed", parameters={"value": 100})
        conversion = await make_conversion(db, pixel, "Purchase")

        await db.execute(update(Pixel).where(Pixel.id == pixel.id).values(events_count=999, revenue_total=-3))
        await db.commit()

        for _ in range(2):
            summary = await analytics.generate_analytics(session_factory)
            assert summary == {"pixels": 1, "succeeded": 1, "failed": 0}

            async with session_factory() as session:
                stored = await session.get(Pixel, pixel.id)
                assert (stored.events_count, stored.conversions_count, stored.revenue_total) == (5, 1, 100.0)
                conv = await session.get(Conversion, conversion.id)
                assert conv.total_conversions == 1
                assert conv.total_value == 100.0
                assert conv.average_value == 100.0
                assert conv.conversion_rate == 20.0

    @pytest.mark.asyncio
    async def test_completion_during_recompute_is_not_lost(self, session_factory, db):
        _, pixel = await _workspace_with_pixel(db)
        await add_events(db, pixel, 3, "PageView")
        [pending] = await add_events(db, pixel, 1, "PageView", state="pending")
        await analytics.generate_analytics(session_factory)
        processor = EventProcessor(session_factory)
        completions = []

        @asynccontextmanager
        async def racing_sessions():
            # Completes the pending event right after the recompute has read the pixel's events
            async with session_factory() as session:
                execute = session.execute

                async def execute_then_complete(statement, *args, **kwargs):
                    result = await execute(statement, *args, **kwargs)
                    if getattr(statement, "is_select", False) and not completions:
                        completions.append(asyncio.create_task(processor.process_event(pending.id)))
                        await asyncio.wait(completions, timeout=0.5)
                    return result

                session.execute = execute_then_complete
                yield session

        await analytics.recompute_pixel(racing_sessions, pixel.id)

        assert await completions[0] == "processed"
        async with session_factory() as session:
            stored = await session.get(Pixel, pixel.id)
        assert stored.events_count == 4
