"""
Diagnostic check catalog — pure functions over a PixelSnapshot.

The engine (services/diagnostics.py) builds one snapshot per pixel and runs
every check in CATALOG order. A check returns a DiagnosticDraft when its
condition holds, None when the pixel is fine. A check whose input couldn't
be loaded raises DiagnosticCheckError; the engine skips it and leaves its
existing diagnostics untouched.

Titles are the upsert key together with pixel_id, so they must stay stable.
"""

import datetime
from dataclasses import dataclass, field
from typing import Callable

from pixelwatch.core.clock import as_utc
from pixelwatch.core.errors import DiagnosticCheckError

ERROR_RATE_WARNING = 0.10
ERROR_RATE_ERROR = 0.50
MISSING_PARAMS_ERROR = 0.50
STALE_AFTER_HOURS = 2
CRITICAL_AFTER_HOURS = 24

REQUIRED_PURCHASE_PARAMS = ("value", "currency")


@dataclass
class PixelSnapshot:
    """
    Everything the checks need for one pixel at one instant.

    Count fields are None when the query behind them failed.
    """
    pixel_id: object
    status: str
    last_activity: datetime.datetime | None
    now: datetime.datetime
    events_last_hour: int | None = None
    failed_last_hour: int | None = None
    purchases_last_day: int | None = None
    incomplete_purchases_last_day: int | None = None
    errors: dict[str, str] = field(default_factory=dict)

    def require(self, *names: str) -> None:
        missing = [n for n in names if getattr(self, n) is None]
        if missing:
            raise DiagnosticCheckError(f"snapshot fields unavailable: {', '.join(missing)}")


@dataclass(frozen=True)
class DiagnosticDraft:
    check: str
    severity: str
    category: str
    title: str
    description: str


@dataclass(frozen=True)
class Check:
    name: str
    run: Callable[[PixelSnapshot], DiagnosticDraft | None]


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_no_recent_events(snap: PixelSnapshot) -> DiagnosticDraft | None:
    snap.require("events_last_hour")
    if snap.events_last_hour != 0 or snap.last_activity is None:
        return None
    hours = (snap.now - as_utc(snap.last_activity)).total_seconds() / 3600
    if hours <= STALE_AFTER_HOURS:
        return None
    return DiagnosticDraft(
        check="no_recent_events",
        severity="error" if hours > CRITICAL_AFTER_HOURS else "warning",
        category="performance",
        title="No recent events",
        description=f"Pixel has not received events for {int(hours)} hours",
    )


def check_error_rate(snap: PixelSnapshot) -> DiagnosticDraft | None:
    snap.require("events_last_hour", "failed_last_hour")
    total, failed = snap.events_last_hour, snap.failed_last_hour
    if total == 0:
        return None
    rate = failed / total
    if rate <= ERROR_RATE_WARNING:
        return None
    return DiagnosticDraft(
        check="error_rate",
        severity="error" if rate > ERROR_RATE_ERROR else "warning",
        category="events",
        title="High error rate",
        description=f"{rate * 100:.1f}% of events are failing ({failed}/{total}) in the last hour",
    )


def check_purchase_completeness(snap: PixelSnapshot) -> DiagnosticDraft | None:
    snap.require("purchases_last_day", "incomplete_purchases_last_day")
    total, missing = snap.purchases_last_day, snap.incomplete_purchases_last_day
    if total == 0 or missing == 0:
        return None
    fraction = missing / total
    return DiagnosticDraft(
        check="purchase_completeness",
        severity="error" if fraction > MISSING_PARAMS_ERROR else "warning",
        category="events",
        title="Incomplete Purchase events",
        description=(
            f"{missing} of {total} Purchase events in the last 24 hours are missing "
            f"required parameters ({', '.join(REQUIRED_PURCHASE_PARAMS)})"
        ),
    )


def check_pixel_status(snap: PixelSnapshot) -> DiagnosticDraft | None:
    if snap.status == "inactive":
        return DiagnosticDraft(
            check="pixel_status",
            severity="warning",
            category="implementation",
            title="Pixel inactive",
            description="Pixel is marked as inactive",
        )
    if snap.status == "error":
        return DiagnosticDraft(
            check="pixel_status",
            severity="error",
            category="implementation",
            title="Pixel error",
            description="Pixel is in error state",
        )
    return None


CATALOG: tuple[Check, ...] = (
    Check("no_recent_events", check_no_recent_events),
    Check("error_rate", check_error_rate),
    Check("purchase_completeness", check_purchase_completeness),
    Check("pixel_status", check_pixel_status),
)


def is_incomplete_purchase(parameters) -> bool:
    params = parameters if isinstance(parameters, dict) else {}
    return any(params.get(key) in (None, "") for key in REQUIRED_PURCHASE_PARAMS)


@dataclass
class CatalogResult:
    drafts: list[DiagnosticDraft]
    ran: list[str]       # check names that produced a verdict
    skipped: dict[str, str]  # check name → reason


def evaluate(snap: PixelSnapshot, catalog: tuple[Check, ...] = CATALOG) -> CatalogResult:
    result = CatalogResult(drafts=[], ran=[], skipped={})
    for check in catalog:
        try:
            draft = check.run(snap)
        except DiagnosticCheckError as exc:
            result.skipped[check.name] = exc.message
            continue
        result.ran.append(check.name)
        if draft is not None:
            result.drafts.append(draft)
    return result
