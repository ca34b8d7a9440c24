"""Pytest configuration."""

import datetime
import os
from types import SimpleNamespace

# Ensure test environment
os.environ.setdefault("PW_DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("PW_DEBUG", "true")
os.environ.setdefault("PW_SETUP_KEY", "test-setup-key")
os.environ.setdefault("PW_DELIVERY_ENDPOINT", "")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pixelwatch.core.clock import utcnow
from pixelwatch.middleware.auth import ApiKey  # noqa: F401  registers api_keys on Base.metadata
from pixelwatch.models.tables import Base, Conversion, Event, Pixel, Workspace


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pixelwatch.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

async def make_workspace(session, name: str = "Acme") -> Workspace:
    workspace = Workspace(name=name)
    session.add(workspace)
    await session.commit()
    return workspace


async def make_pixel(session, workspace: Workspace, **fields) -> Pixel:
    fields.setdefault("name", "Storefront")
    pixel = Pixel(workspace_id=workspace.id, **fields)
    session.add(pixel)
    await session.commit()
    return pixel


async def make_conversion(session, pixel: Pixel, event_name: str = "Purchase", rules=None, **fields) -> Conversion:
    fields.setdefault("name", f"{event_name} conversion")
    conversion = Conversion(pixel_id=pixel.id, event_name=event_name, rules=rules or [], **fields)
    session.add(conversion)
    await session.commit()
    return conversion


async def add_events(session, pixel: Pixel, count: int, event_name: str = "PageView", state: str = "processed",
                     timestamp: datetime.datetime | None = None, parameters: dict | None = None,
                     event_type: str = "standard") -> list[Event]:
    timestamp = timestamp or utcnow() - datetime.timedelta(minutes=5)
    events = [
        Event(
            pixel_id=pixel.id,
            event_name=event_name,
            event_type=event_type,
            parameters=dict(parameters or {}),
            source="web",
            timestamp=timestamp,
            processing_state=state,
            error_reason="Delivery rejected with HTTP 500" if state == "failed" else None,
        )
        for _ in range(count)
    ]
    session.add_all(events)
    await session.commit()
    return events


def fake_event(event_name: str = "PageView", parameters: dict | None = None, timestamp: datetime.datetime | None = None,
               state: str = "processed", event_type: str = "standard", **extra) -> SimpleNamespace:
    """Plain stand-in for an Event row, for the pure aggregation and rule tests."""
    return SimpleNamespace(
        event_name=event_name,
        event_type=event_type,
        parameters=parameters if parameters is not None else {},
        timestamp=timestamp or utcnow(),
        processing_state=state,
        **extra,
    )


@pytest.fixture
def now():
    return datetime.datetime(2026, 10, 18, 14, 30, tzinfo=datetime.timezone.utc)
