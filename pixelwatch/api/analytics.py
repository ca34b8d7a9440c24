"""
Analytics API — read-only aggregations over the workspace's events.
All queries scoped by auth.workspace_id.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.middleware.auth import AuthContext, require_auth
from pixelwatch.models.database import get_db
from pixelwatch.services import analytics

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])


@router.get("/events")
async def events_analytics(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    timeframe: str = Query(analytics.DEFAULT_TIMEFRAME),
    pixel_id: UUID | None = Query(None),
    event_name: str | None = Query(None, max_length=100),
):
    """Summary, hourly/daily/type trends and top 10 events."""
    return await analytics.get_events_analytics(db, auth.workspace_id, timeframe, pixel_id, event_name)


@router.get("/conversions/{conversion_id}")
async def conversion_analytics(
    conversion_id: UUID,
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    timeframe: str = Query(analytics.DEFAULT_TIMEFRAME),
):
    return await analytics.get_conversion_analytics(db, auth.workspace_id, conversion_id, timeframe)


@router.get("/funnel")
async def funnel_analytics(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    timeframe: str = Query(analytics.DEFAULT_TIMEFRAME),
    pixel_id: UUID | None = Query(None),
):
    """PageView → ViewContent → AddToCart → InitiateCheckout → Purchase."""
    return await analytics.get_funnel_analytics(db, auth.workspace_id, timeframe, pixel_id)


@router.get("/revenue")
async def revenue_analytics(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    timeframe: str = Query(analytics.DEFAULT_TIMEFRAME),
):
    return await analytics.get_revenue_analytics(db, auth.workspace_id, timeframe)


@router.get("/realtime")
async def realtime_analytics(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Last 15 minutes, bucketed per minute."""
    return await analytics.get_realtime_analytics(db, auth.workspace_id)
