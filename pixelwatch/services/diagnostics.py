"""
Diagnostic engine — runs the check catalog per pixel and keeps the
diagnostics table in sync with it.

Per pixel:
  1. Build a PixelSnapshot (each query independent; a failed query leaves
     its fields None so only the checks that need them are skipped)
  2. Evaluate core.diagnostics.CATALOG
  3. Upsert every finding by (pixel_id, title), reactivating it if resolved
  4. Resolve active engine diagnostics whose check ran but no longer fires

Runs for the same pixel are serialized; the result only depends on the
data, so repeated runs converge on the same active set.
"""

import datetime
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixelwatch.config import get_settings
from pixelwatch.core.clock import as_utc, utcnow
from pixelwatch.core.diagnostics import CATALOG, Check, PixelSnapshot, evaluate, is_incomplete_purchase
from pixelwatch.core.errors import NotFoundError, ValidationError
from pixelwatch.core.export import to_csv
from pixelwatch.core.pool import KeyedLocks, bounded_gather
from pixelwatch.models.database import get_session_maker
from pixelwatch.models.tables import Diagnostic, Event, Pixel
from pixelwatch.services.scope import get_pixel, workspace_pixel_ids

import structlog

logger = structlog.get_logger()

SEVERITIES = ("error", "warning", "info", "success")
CATEGORIES = ("implementation", "events", "performance", "connection")
STATUSES = ("active", "resolved")


def _iso(value: datetime.datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def serialize_diagnostic(diag: Diagnostic, pixel_name: str | None = None) -> dict:
    record = {
        "id": str(diag.id),
        "pixelId": str(diag.pixel_id),
        "severity": diag.severity,
        "category": diag.category,
        "title": diag.title,
        "description": diag.description,
        "status": diag.status,
        "source": "engine" if diag.check_name else "manual",
        "lastCheckedAt": _iso(diag.last_checked_at),
        "resolvedAt": _iso(diag.resolved_at),
    }
    if pixel_name is not None:
        record["pixelName"] = pixel_name
    return record


@dataclass
class PixelRun:
    pixel_id: UUID
    checks_run: int
    diagnostics: list[Diagnostic]
    resolved: int


class DiagnosticEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        concurrency: int | None = None,
        catalog: tuple[Check, ...] = CATALOG,
    ):
        self._session_factory = session_factory or get_session_maker()
        self._concurrency = concurrency or get_settings().worker_concurrency
        self._catalog = catalog
        self._locks = KeyedLocks()

    async def build_snapshot(self, session: AsyncSession, pixel: Pixel, now: datetime.datetime) -> PixelSnapshot:
        pixel_id = pixel.id
        snap = PixelSnapshot(
            pixel_id=pixel_id,
            status=pixel.status,
            last_activity=as_utc(pixel.last_activity),
            now=now,
        )

        hour_ago = now - datetime.timedelta(hours=1)
        try:
            row = (await session.execute(
                select(
                    func.count(Event.id),
                    func.count(Event.id).filter(Event.processing_state == "failed"),
                ).where(Event.pixel_id == pixel_id, Event.timestamp >= hour_ago)
            )).one()
            snap.events_last_hour, snap.failed_last_hour = int(row[0]), int(row[1])
        except SQLAlchemyError as exc:
            await session.rollback()
            snap.errors["recent_events"] = str(exc)
            logger.warning("diagnostic_query_failed", pixel_id=str(pixel_id), query="recent_events", error=str(exc))

        day_ago = now - datetime.timedelta(hours=24)
        try:
            result = await session.execute(
                select(Event.parameters).where(
                    Event.pixel_id == pixel_id,
                    Event.event_name == "Purchase",
                    Event.timestamp >= day_ago,
                )
            )
            params = result.scalars().all()
            snap.purchases_last_day = len(params)
            snap.incomplete_purchases_last_day = sum(1 for p in params if is_incomplete_purchase(p))
        except SQLAlchemyError as exc:
            await session.rollback()
            snap.errors["purchases"] = str(exc)
            logger.warning("diagnostic_query_failed", pixel_id=str(pixel_id), query="purchases", error=str(exc))

        return snap

    async def run_for_pixel(self, pixel_id: UUID) -> PixelRun:
        async with self._locks(pixel_id):
            async with self._session_factory() as session:
                pixel = await session.get(Pixel, pixel_id)
                if pixel is None:
                    raise NotFoundError("Pixel not found")

                now = utcnow()
                snap = await self.build_snapshot(session, pixel, now)
                outcome = evaluate(snap, self._catalog)
                for check_name, reason in outcome.skipped.items():
                    logger.warning("diagnostic_check_skipped", pixel_id=str(pixel_id), check=check_name, reason=reason)

                result = await session.execute(select(Diagnostic).where(Diagnostic.pixel_id == pixel_id))
                existing = {d.title: d for d in result.scalars().all()}

                current = []
                for draft in outcome.drafts:
                    diag = existing.get(draft.title)
                    if diag is None:
                        diag = Diagnostic(pixel_id=pixel_id, title=draft.title)
                        session.add(diag)
                    diag.severity = draft.severity
                    diag.category = draft.category
                    diag.description = draft.description
                    diag.check_name = draft.check
                    diag.status = "active"
                    diag.resolved_at = None
                    diag.last_checked_at = now
                    current.append(diag)

                fired = {d.title for d in outcome.drafts}
                ran = set(outcome.ran)
                resolved = 0
                for diag in existing.values():
                    if diag.status == "active" and diag.check_name in ran and diag.title not in fired:
                        diag.status = "resolved"
                        diag.resolved_at = now
                        diag.last_checked_at = now
                        resolved += 1

                await session.commit()

        logger.info("diagnostics_run", pixel_id=str(pixel_id), checks_run=len(outcome.ran),
                    issues=len(current), resolved=resolved)
        return PixelRun(pixel_id=pixel_id, checks_run=len(outcome.ran), diagnostics=current, resolved=resolved)

    async def run_for_workspace(self, pixel_ids: list[UUID]) -> dict:
        """Run every pixel; a failing pixel is logged and skipped."""
        results = await bounded_gather(pixel_ids, self.run_for_pixel, self._concurrency)
        succeeded = failed = issues = 0
        for pixel_id, result in zip(pixel_ids, results):
            if isinstance(result, Exception):
                failed += 1
                logger.error("diagnostics_pixel_failed", pixel_id=str(pixel_id), error=str(result))
                continue
            succeeded += 1
            issues += len(result.diagnostics)
        return {"pixels": len(pixel_ids), "succeeded": succeeded, "failed": failed, "issues": issues}

    async def run_all(self) -> dict:
        """Scheduled entry point: every pixel in every workspace."""
        async with self._session_factory() as session:
            result = await session.execute(select(Pixel.id).order_by(Pixel.id))
            pixel_ids = list(result.scalars().all())
        summary = await self.run_for_workspace(pixel_ids)
        logger.info("diagnostics_batch_completed", **summary)
        return summary


# ---------------------------------------------------------------------------
# On-demand operations (workspace scoped)
# ---------------------------------------------------------------------------

async def run_diagnostics(engine: DiagnosticEngine, db: AsyncSession, workspace_id: UUID, pixel_id: UUID) -> dict:
    await get_pixel(db, workspace_id, pixel_id)
    run = await engine.run_for_pixel(pixel_id)
    return {
        "pixelId": str(pixel_id),
        "diagnosticsRun": run.checks_run,
        "issues": len(run.diagnostics),
        "results": [serialize_diagnostic(d) for d in run.diagnostics],
    }


async def get_diagnostics_summary(db: AsyncSession, workspace_id: UUID) -> dict:
    result = await db.execute(
        select(Diagnostic.severity, Diagnostic.category, Diagnostic.status, func.count(Diagnostic.id))
        .where(Diagnostic.pixel_id.in_(workspace_pixel_ids(workspace_id)))
        .group_by(Diagnostic.severity, Diagnostic.category, Diagnostic.status)
    )
    summary = {
        "total": 0,
        "bySeverity": dict.fromkeys(SEVERITIES, 0),
        "byCategory": dict.fromkeys(CATEGORIES, 0),
        "byStatus": dict.fromkeys(STATUSES, 0),
    }
    for severity, category, status, count in result.all():
        summary["total"] += count
        summary["bySeverity"][severity] = summary["bySeverity"].get(severity, 0) + count
        summary["byCategory"][category] = summary["byCategory"].get(category, 0) + count
        summary["byStatus"][status] = summary["byStatus"].get(status, 0) + count
    return summary


async def list_diagnostic_records(
    db: AsyncSession,
    workspace_id: UUID,
    pixel_id: UUID | None = None,
    severity: str | None = None,
    status: str | None = None,
) -> list[dict]:
    query = (
        select(Diagnostic, Pixel.name)
        .join(Pixel, Pixel.id == Diagnostic.pixel_id)
        .where(Pixel.workspace_id == workspace_id)
    )
    if pixel_id:
        query = query.where(Diagnostic.pixel_id == pixel_id)
    if severity:
        query = query.where(Diagnostic.severity == severity)
    if status:
        query = query.where(Diagnostic.status == status)
    query = query.order_by(Diagnostic.created_at.desc(), Diagnostic.id)

    result = await db.execute(query)
    return [serialize_diagnostic(diag, pixel_name) for diag, pixel_name in result.all()]


async def export_diagnostics(
    db: AsyncSession,
    workspace_id: UUID,
    fmt: str = "json",
    **filters,
) -> dict | str:
    """JSON envelope, or CSV text when fmt == "csv"."""
    if fmt not in ("json", "csv"):
        raise ValidationError("format must be 'json' or 'csv'")
    records = await list_diagnostic_records(db, workspace_id, **filters)
    if fmt == "csv":
        return to_csv(records)
    return {
        "exportedAt": utcnow().isoformat(),
        "totalRecords": len(records),
        "diagnostics": records,
    }


async def resolve_diagnostic(db: AsyncSession, workspace_id: UUID, diagnostic_id: UUID) -> dict:
    diag = await db.scalar(
        select(Diagnostic)
        .where(Diagnostic.id == diagnostic_id, Diagnostic.pixel_id.in_(workspace_pixel_ids(workspace_id)))
    )
    if diag is None:
        raise NotFoundError("Diagnostic not found")
    now = utcnow()
    diag.status = "resolved"
    diag.resolved_at = now
    diag.last_checked_at = now
    await db.commit()
    logger.info("diagnostic_resolved", diagnostic_id=str(diagnostic_id), title=diag.title)
    return serialize_diagnostic(diag)
