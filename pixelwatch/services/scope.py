"""Workspace scoping. Every lookup goes through pixels.workspace_id."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.core.errors import NotFoundError
from pixelwatch.models.tables import Conversion, Pixel


def workspace_pixel_ids(workspace_id: UUID):
    """Subquery of pixel ids owned by the workspace."""
    return select(Pixel.id).where(Pixel.workspace_id == workspace_id)


async def get_pixel(db: AsyncSession, workspace_id: UUID, pixel_id: UUID) -> Pixel:
    pixel = await db.scalar(
        select(Pixel).where(Pixel.id == pixel_id, Pixel.workspace_id == workspace_id)
    )
    if pixel is None:
        raise NotFoundError("Pixel not found")
    return pixel


async def get_conversion(db: AsyncSession, workspace_id: UUID, conversion_id: UUID) -> Conversion:
    conversion = await db.scalar(
        select(Conversion)
        .join(Pixel, Pixel.id == Conversion.pixel_id)
        .where(Conversion.id == conversion_id, Pixel.workspace_id == workspace_id)
    )
    if conversion is None:
        raise NotFoundError("Conversion not found")
    return conversion
