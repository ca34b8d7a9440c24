"""
Diagnostics API — on-demand runs, summary, export and manual resolution.
All queries scoped by auth.workspace_id.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from pixelwatch.core.clock import utcnow
from pixelwatch.middleware.auth import AuthContext, require_auth
from pixelwatch.models.database import get_db
from pixelwatch.services import diagnostics
from pixelwatch.services.diagnostics import DiagnosticEngine

router = APIRouter(prefix="/v1/diagnostics", tags=["diagnostics"])


def get_engine(request: Request) -> DiagnosticEngine:
    return request.app.state.diagnostic_engine


@router.post("/pixels/{pixel_id}/run")
async def run_diagnostics(
    pixel_id: UUID,
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    engine: DiagnosticEngine = Depends(get_engine),
):
    return await diagnostics.run_diagnostics(engine, db, auth.workspace_id, pixel_id)


@router.get("/summary")
async def diagnostics_summary(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await diagnostics.get_diagnostics_summary(db, auth.workspace_id)


@router.get("/export")
async def export_diagnostics(
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
    format: str = Query("json"),
    pixel_id: UUID | None = Query(None),
    severity: str | None = Query(None),
    status: str | None = Query(None),
):
    report = await diagnostics.export_diagnostics(
        db, auth.workspace_id, format, pixel_id=pixel_id, severity=severity, status=status
    )
    if format == "csv":
        filename = f"diagnostics-{utcnow().strftime('%Y%m%d%H%M%S')}.csv"
        return Response(
            content=report,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return report


@router.post("/{diagnostic_id}/resolve")
async def resolve_diagnostic(
    diagnostic_id: UUID,
    auth: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await diagnostics.resolve_diagnostic(db, auth.workspace_id, diagnostic_id)
