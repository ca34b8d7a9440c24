"""
Admin bootstrap endpoint (debug only).
Creates a workspace, an optional first pixel and an API key.
Handles retries gracefully — reuses the workspace if it already exists.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.config import get_settings
from pixelwatch.middleware.auth import ApiKey, create_api_key
from pixelwatch.models.database import get_db
from pixelwatch.models.tables import Pixel, Workspace

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


class BootstrapRequest(BaseModel):
    workspace_name: str
    setup_key: str
    pixel_name: str | None = None


@router.post("/bootstrap")
async def bootstrap(
    body: BootstrapRequest,
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()

    if not settings.debug:
        raise HTTPException(status_code=404, detail="Not found")

    if body.setup_key != settings.setup_key:
        raise HTTPException(status_code=403, detail="Invalid setup key")

    # Find or create workspace
    result = await db.execute(select(Workspace).where(Workspace.name == body.workspace_name))
    workspace = result.scalars().first()
    if workspace is None:
        workspace = Workspace(name=body.workspace_name)
        db.add(workspace)
        await db.flush()

    existing = await db.scalar(select(ApiKey.id).where(ApiKey.workspace_id == workspace.id).limit(1))
    if existing is not None:
        return {
            "message": "Workspace already has API keys. Create a new workspace name to get a new key.",
            "workspace": {"id": str(workspace.id), "name": workspace.name},
        }

    pixel = None
    if body.pixel_name:
        pixel = Pixel(workspace_id=workspace.id, name=body.pixel_name)
        db.add(pixel)

    raw_key = await create_api_key(db, workspace.id, name="Default Key")
    await db.commit()

    logger.info("workspace_bootstrapped", workspace_id=str(workspace.id))
    return {
        "message": "SAVE THIS KEY — it won't be shown again.",
        "workspace": {"id": str(workspace.id), "name": workspace.name},
        "pixel": {"id": str(pixel.id), "name": pixel.name} if pixel else None,
        "api_key": raw_key,
    }
