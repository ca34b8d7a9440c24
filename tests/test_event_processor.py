"""Tests for event ingestion, processing and retry."""

import asyncio
import datetime
from contextlib import asynccontextmanager
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import func, select

from conftest import add_events, make_pixel, make_workspace
from pixelwatch.core.clock import utcnow
from pixelwatch.core.delivery import EventDeliverer
from pixelwatch.core.errors import NotFoundError, ValidationError
from pixelwatch.models.tables import Event, Pixel
from pixelwatch.services.events import (
    ALREADY_PROCESSED,
    FAILED,
    MISSING,
    PROCESSED,
    EventProcessor,
    normalize_event_payload,
)


class FlakyDeliverer(EventDeliverer):
    """Rejects the first `failures` deliveries, then validates normally."""

    def __init__(self, failures: int):
        super().__init__(endpoint="")
        self.failures = failures
        self.calls = 0

    async def deliver(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            transport = httpx.MockTransport(lambda request: httpx.Response(500))
            await EventDeliverer(endpoint="https://collector.test", transport=transport).deliver(event)
        await super().deliver(event)


async def _pixel(session, **fields):
    workspace = await make_workspace(session)
    return workspace, await make_pixel(session, workspace, **fields)


async def _reload_pixel(session_factory, pixel_id):
    async with session_factory() as session:
        return await session.get(Pixel, pixel_id)


class TestNormalizePayload:
    def test_defaults(self):
        data = normalize_event_payload({"pixel_id": str(uuid4()), "event_name": " PageView "})
        assert data["event_name"] == "PageView"
        assert data["event_type"] == "standard"
        assert data["source"] == "web"
        assert data["parameters"] == {}
        assert data["timestamp"].tzinfo is not None

    def test_iso_timestamp_with_z(self):
        data = normalize_event_payload({
            "pixel_id": str(uuid4()), "event_name": "Lead", "timestamp": "2026-10-18T10:00:00Z",
        })
        assert data["timestamp"] == datetime.datetime(2026, 10, 18, 10, tzinfo=datetime.timezone.utc)

    @pytest.mark.parametrize("raw", [
        {"event_name": "PageView"},
        {"pixel_id": "not-a-uuid", "event_name": "PageView"},
        {"pixel_id": str(uuid4()), "event_name": ""},
        {"pixel_id": str(uuid4()), "event_name": "PageView", "event_type": "weird"},
        {"pixel_id": str(uuid4()), "event_name": "PageView", "source": "carrier-pigeon"},
        {"pixel_id": str(uuid4()), "event_name": "PageView", "parameters": ["a"]},
        {"pixel_id": str(uuid4()), "event_name": "PageView", "timestamp": "yesterday"},
        {"pixel_id": str(uuid4()), "event_name": "x" * 101},
    ])
    def test_malformed_payloads_rejected(self, raw):
        with pytest.raises(ValidationError):
            normalize_event_payload(raw)


class TestIngestion:
    @pytest.mark.asyncio
    async def test_create_event_returns_pending_and_processes_in_background(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        processor = EventProcessor(session_factory, concurrency=2)

        event = await processor.create_event(db, workspace.id, {
            "pixel_id": str(pixel.id), "event_name": "Purchase", "parameters": {"value": 49.5, "currency": "USD"},
        })
        assert event.processing_state == "pending"

        await processor.drain()
        assert processor.pending_tasks == 0

        async with session_factory() as session:
            stored = await session.get(Event, event.id)
            assert stored.processing_state == "processed"
            assert stored.processed_at is not None

        refreshed = await _reload_pixel(session_factory, pixel.id)
        assert refreshed.events_count == 1
        assert refreshed.conversions_count == 1
        assert refreshed.revenue_total == 49.5
        assert refreshed.last_activity is not None

    @pytest.mark.asyncio
    async def test_pixel_from_other_workspace_rejected(self, session_factory, db):
        _, pixel = await _pixel(db)
        other = await make_workspace(db, "Other")
        processor = EventProcessor(session_factory)

        with pytest.raises(ValidationError):
            await processor.create_event(db, other.id, {"pixel_id": str(pixel.id), "event_name": "PageView"})

    @pytest.mark.asyncio
    async def test_bulk_create(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        processor = EventProcessor(session_factory, concurrency=2)

        result = await processor.bulk_create_events(db, workspace.id, [
            {"pixel_id": str(pixel.id), "event_name": "PageView"},
            {"pixel_id": str(pixel.id), "event_name": "AddToCart", "source": "mobile"},
        ])
        assert result["created"] == 2
        assert [e["source"] for e in result["events"]] == ["server", "mobile"]

        await processor.drain()
        assert (await _reload_pixel(session_factory, pixel.id)).events_count == 2

    @pytest.mark.asyncio
    async def test_bulk_limits(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        processor = EventProcessor(session_factory)

        with pytest.raises(ValidationError):
            await processor.bulk_create_events(db, workspace.id, [])
        too_many = [{"pixel_id": str(pixel.id), "event_name": "PageView"}] * 101
        with pytest.raises(ValidationError):
            await processor.bulk_create_events(db, workspace.id, too_many)

    @pytest.mark.asyncio
    async def test_bulk_is_all_or_nothing(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        processor = EventProcessor(session_factory)

        with pytest.raises(ValidationError):
            await processor.bulk_create_events(db, workspace.id, [
                {"pixel_id": str(pixel.id), "event_name": "PageView"},
                {"pixel_id": str(uuid4()), "event_name": "PageView"},
            ])
        assert await db.scalar(select(func.count(Event.id))) == 0


class TestProcessing:
    @pytest.mark.asyncio
    async def test_reprocessing_processed_event_never_double_counts(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "Purchase", state="pending",
                                   parameters={"value": 10, "currency": "USD"})
        processor = EventProcessor(session_factory)

        assert await processor.process_event(event.id) == PROCESSED
        assert await processor.process_event(event.id) == ALREADY_PROCESSED

        refreshed = await _reload_pixel(session_factory, pixel.id)
        assert (refreshed.events_count, refreshed.conversions_count, refreshed.revenue_total) == (1, 1, 10.0)

    @pytest.mark.asyncio
    async def test_concurrent_processing_counts_once(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "PageView", state="pending")
        processor = EventProcessor(session_factory)

        outcomes = await asyncio.gather(*(processor.process_event(event.id) for _ in range(4)))
        assert outcomes.count(PROCESSED) == 1
        assert (await _reload_pixel(session_factory, pixel.id)).events_count == 1

    @pytest.mark.asyncio
    async def test_invalid_event_fails_without_counters(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "Purchase", state="pending", parameters={"value": -5})
        processor = EventProcessor(session_factory)

        assert await processor.process_event(event.id) == FAILED
        async with session_factory() as session:
            stored = await session.get(Event, event.id)
            assert stored.processing_state == "failed"
            assert "negative" in stored.error_reason
        assert (await _reload_pixel(session_factory, pixel.id)).events_count == 0

    @pytest.mark.asyncio
    async def test_purchase_without_numeric_value_is_not_a_conversion(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "Purchase", state="pending", parameters={"currency": "USD"})
        processor = EventProcessor(session_factory)

        assert await processor.process_event(event.id) == PROCESSED
        refreshed = await _reload_pixel(session_factory, pixel.id)
        assert (refreshed.events_count, refreshed.conversions_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_missing_event(self, session_factory):
        assert await EventProcessor(session_factory).process_event(uuid4()) == MISSING

    @pytest.mark.asyncio
    async def test_activity_reactivates_pixel_marked_inactive_for_silence(self, session_factory, db):
        _, pixel = await _pixel(db, status="inactive", status_reason="inactivity")
        [event] = await add_events(db, pixel, 1, "PageView", state="pending")

        await EventProcessor(session_factory).process_event(event.id)
        refreshed = await _reload_pixel(session_factory, pixel.id)
        assert refreshed.status == "active"
        assert refreshed.status_reason is None

    @pytest.mark.asyncio
    async def test_manually_inactive_pixel_stays_inactive(self, session_factory, db):
        _, pixel = await _pixel(db, status="inactive")
        [event] = await add_events(db, pixel, 1, "PageView", state="pending")

        await EventProcessor(session_factory).process_event(event.id)
        assert (await _reload_pixel(session_factory, pixel.id)).status == "inactive"


class TestReprocess:
    @pytest.mark.asyncio
    async def test_batch_limit(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        await add_events(db, pixel, 150, "PageView", state="failed")
        processor = EventProcessor(session_factory, concurrency=4)

        result = await processor.reprocess_failed_events(workspace_id=workspace.id, limit=100)

        assert result["totalFailed"] == 150
        assert result["reprocessed"] <= 100
        async with session_factory() as session:
            processed = await session.scalar(
                select(func.count(Event.id)).where(Event.processing_state == "processed")
            )
        assert processed <= 100
        assert processed == result["reprocessed"]

    @pytest.mark.asyncio
    async def test_failed_event_recovers_on_retry(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "Lead", state="pending")
        processor = EventProcessor(session_factory, deliverer=FlakyDeliverer(failures=1))

        assert await processor.process_event(event.id) == FAILED
        result = await processor.reprocess_failed_events(workspace_id=workspace.id)
        assert result == {"totalFailed": 1, "reprocessed": 1}

        async with session_factory() as session:
            stored = await session.get(Event, event.id)
            assert stored.processing_state == "processed"
            assert stored.error_reason is None
        assert (await _reload_pixel(session_factory, pixel.id)).events_count == 1

    @pytest.mark.asyncio
    async def test_one_bad_event_does_not_abort_batch(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        await add_events(db, pixel, 3, "PageView", state="failed")
        await add_events(db, pixel, 2, "Purchase", state="failed", parameters={"value": "free"})
        processor = EventProcessor(session_factory)

        result = await processor.reprocess_failed_events(workspace_id=workspace.id)
        assert result == {"totalFailed": 5, "reprocessed": 3}

    @pytest.mark.asyncio
    async def test_scoped_to_workspace_and_pixel(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        second = await make_pixel(db, workspace, name="Blog")
        other_ws = await make_workspace(db, "Other")
        foreign = await make_pixel(db, other_ws)
        await add_events(db, pixel, 2, "PageView", state="failed")
        await add_events(db, second, 1, "PageView", state="failed")
        await add_events(db, foreign, 4, "PageView", state="failed")
        processor = EventProcessor(session_factory)

        result = await processor.reprocess_failed_events(workspace_id=workspace.id, pixel_id=pixel.id)
        assert result == {"totalFailed": 2, "reprocessed": 2}

        result = await processor.reprocess_failed_events(workspace_id=workspace.id)
        assert result == {"totalFailed": 1, "reprocessed": 1}

        with pytest.raises(NotFoundError):
            await processor.reprocess_failed_events(workspace_id=workspace.id, pixel_id=foreign.id)

    @pytest.mark.asyncio
    async def test_stale_pending_picked_up(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "PageView", state="pending")
        processor = EventProcessor(session_factory)

        assert await processor.process_stale_pending(datetime.timedelta(minutes=10)) == 0

        async with session_factory() as session:
            stored = await session.get(Event, event.id)
            stored.created_at = utcnow() - datetime.timedelta(hours=1)
            await session.commit()

        assert await processor.process_stale_pending(datetime.timedelta(minutes=10)) == 1

    @pytest.mark.asyncio
    async def test_expired_failures_do_not_starve_recoverable_ones(self, session_factory, db):
        workspace, pixel = await _pixel(db)
        await add_events(db, pixel, 100, "PageView", state="failed",
                         timestamp=utcnow() - datetime.timedelta(days=8))
        [recent] = await add_events(db, pixel, 1, "PageView", state="failed",
                                    timestamp=utcnow() - datetime.timedelta(hours=1))
        processor = EventProcessor(session_factory)

        result = await processor.reprocess_failed_events(workspace_id=workspace.id, limit=100)

        assert result == {"totalFailed": 101, "reprocessed": 1}
        async with session_factory() as session:
            stored = await session.get(Event, recent.id)
            assert stored.processing_state == "processed"
            still_failed = await session.scalar(
                select(func.count(Event.id)).where(Event.processing_state == "failed")
            )
        assert still_failed == 100


class TestDeliverySessions:
    @pytest.mark.asyncio
    async def test_no_session_open_while_delivering(self, session_factory, db):
        _, pixel = await _pixel(db)
        [event] = await add_events(db, pixel, 1, "Lead", state="pending")
        open_sessions = 0
        seen = []

        @asynccontextmanager
        async def counting_sessions():
            nonlocal open_sessions
            open_sessions += 1
            try:
                async with session_factory() as session:
                    yield session
            finally:
                open_sessions -= 1

        class RecordingDeliverer(EventDeliverer):
            async def deliver(self, event):
                seen.append(open_sessions)
                await super().deliver(event)

        processor = EventProcessor(counting_sessions, deliverer=RecordingDeliverer(endpoint=""))

        assert await processor.process_event(event.id) == PROCESSED
        assert seen == [0]
        assert open_sessions == 0
        assert (await _reload_pixel(session_factory, pixel.id)).events_count == 1
