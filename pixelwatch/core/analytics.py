"""
Analytics aggregation — pure functions over a slice of events.

Events are anything with event_name / parameters / timestamp /
processing_state attributes (ORM rows in production, plain objects in tests).
Nothing here touches the database; services/analytics.py does the querying.

Bucket keys are UTC:
  day    → "2026-10-18"
  hour   → "2026-10-18T14"
  minute → "2026-10-18T14:05"
"""

import datetime
import math
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Iterable, Sequence

from pixelwatch.core.clock import as_utc
from pixelwatch.core.errors import ValidationError
from pixelwatch.core.rules import Rule, matches, parse_number

PURCHASE = "Purchase"

TIMEFRAMES: dict[str, datetime.timedelta] = {
    "1h": datetime.timedelta(hours=1),
    "24h": datetime.timedelta(hours=24),
    "7d": datetime.timedelta(days=7),
    "30d": datetime.timedelta(days=30),
}


@dataclass(frozen=True)
class FunnelStep:
    name: str
    event_name: str


DEFAULT_FUNNEL_STEPS: tuple[FunnelStep, ...] = (
    FunnelStep("Page Views", "PageView"),
    FunnelStep("Content Views", "ViewContent"),
    FunnelStep("Add to Cart", "AddToCart"),
    FunnelStep("Initiate Checkout", "InitiateCheckout"),
    FunnelStep("Purchase", "Purchase"),
)


def timeframe_window(timeframe: str, now: datetime.datetime) -> tuple[datetime.datetime, datetime.datetime]:
    try:
        span = TIMEFRAMES[timeframe]
    except KeyError:
        raise ValidationError(f"Unknown timeframe '{timeframe}'. Use one of: {', '.join(TIMEFRAMES)}")
    return now - span, now


# ---------------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------------

def _event_value(event) -> float:
    params = event.parameters if isinstance(event.parameters, dict) else {}
    return parse_number(params.get("value")) or 0.0


def _group_by_format(events: Iterable, fmt: str) -> dict[str, int]:
    counts = Counter(as_utc(e.timestamp).strftime(fmt) for e in events)
    return dict(sorted(counts.items()))


def group_by_day(events: Iterable) -> dict[str, int]:
    return _group_by_format(events, "%Y-%m-%d")


def group_by_hour(events: Iterable) -> dict[str, int]:
    return _group_by_format(events, "%Y-%m-%dT%H")


def group_by_minute(events: Iterable) -> dict[str, int]:
    return _group_by_format(events, "%Y-%m-%dT%H:%M")


def group_by_type(events: Iterable) -> dict[str, int]:
    return dict(Counter(e.event_name for e in events))


def top_events(events: Iterable, limit: int = 10) -> list[dict]:
    counts = Counter(e.event_name for e in events)
    # ties broken by name so output is stable
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{"name": name, "count": count} for name, count in ranked[:limit]]


def events_summary(events: Sequence) -> dict:
    total = len(events)
    states = Counter(e.processing_state for e in events)
    processed = states.get("processed", 0)
    return {
        "totalEvents": total,
        "processedEvents": processed,
        "failedEvents": states.get("failed", 0),
        "pendingEvents": states.get("pending", 0),
        "successRate": round(processed / total * 100, 2) if total else 0,
    }


# ---------------------------------------------------------------------------
# Funnel
# ---------------------------------------------------------------------------

def funnel(steps: Sequence[FunnelStep], events: Iterable) -> dict:
    """
    Count each step's events and compute stage-to-stage rates.

    stepRate[0] = 100; stepRate[i] = count[i] / count[i-1] * 100 (0 when the
    previous step is empty), rounded to 2 decimals.
    """
    by_name = Counter(e.event_name for e in events)
    counts = [by_name.get(step.event_name, 0) for step in steps]

    out_steps = []
    for i, step in enumerate(steps):
        if i == 0:
            rate = 100.0
        elif counts[i - 1] == 0:
            rate = 0.0
        else:
            rate = round(counts[i] / counts[i - 1] * 100, 2)
        out_steps.append({
            "name": step.name,
            "eventName": step.event_name,
            "count": counts[i],
            "conversionRate": rate,
        })

    first = counts[0] if counts else 0
    last = counts[-1] if counts else 0
    return {
        "steps": out_steps,
        "totalVisitors": first,
        "totalConversions": last,
        "overallConversionRate": (last / first * 100) if first else 0,
    }


# ---------------------------------------------------------------------------
# Conversions & revenue
# ---------------------------------------------------------------------------

def conversion_analytics(events: Iterable, rules: Sequence[Rule | dict]) -> dict:
    conversions_by_day: dict[str, int] = defaultdict(int)
    values_by_day: dict[str, list[float]] = defaultdict(list)

    for event in events:
        if not matches(event, rules):
            continue
        day = as_utc(event.timestamp).strftime("%Y-%m-%d")
        conversions_by_day[day] += 1
        values_by_day[day].append(_event_value(event))

    total_conversions = sum(conversions_by_day.values())
    total_value = math.fsum(v for vals in values_by_day.values() for v in vals)
    return {
        "totalConversions": total_conversions,
        "totalValue": total_value,
        "averageValue": total_value / total_conversions if total_conversions else 0,
        "conversionsByDay": dict(sorted(conversions_by_day.items())),
        "valueByDay": {day: math.fsum(vals) for day, vals in sorted(values_by_day.items())},
    }


def revenue_by_day(events: Iterable) -> dict[str, float]:
    buckets: dict[str, list[float]] = defaultdict(list)
    for event in events:
        if event.event_name != PURCHASE:
            continue
        buckets[as_utc(event.timestamp).strftime("%Y-%m-%d")].append(_event_value(event))
    return {day: math.fsum(vals) for day, vals in sorted(buckets.items())}


def revenue_summary(events: Sequence) -> dict:
    purchases = [e for e in events if e.event_name == PURCHASE]
    total_revenue = math.fsum(_event_value(e) for e in purchases)
    total_orders = len(purchases)
    return {
        "totalRevenue": total_revenue,
        "totalOrders": total_orders,
        "averageOrderValue": total_revenue / total_orders if total_orders else 0,
        "revenueByDay": revenue_by_day(purchases),
        "ordersByDay": group_by_day(purchases),
    }


# ---------------------------------------------------------------------------
# Full-recompute reductions (source of truth for rollup columns)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PixelCounters:
    events_count: int = 0
    conversions_count: int = 0
    revenue_total: float = 0.0


@dataclass(frozen=True)
class ConversionSummary:
    total_conversions: int = 0
    total_value: float = 0.0
    average_value: float = 0.0
    conversion_rate: float = 0.0


def counter_delta(event) -> PixelCounters:
    """What one processed event contributes to its pixel's counters."""
    if event.event_name == PURCHASE:
        params = event.parameters if isinstance(event.parameters, dict) else {}
        value = parse_number(params.get("value"))
        if value is not None:
            return PixelCounters(events_count=1, conversions_count=1, revenue_total=value)
    return PixelCounters(events_count=1)


def reduce_pixel_counters(events: Iterable) -> PixelCounters:
    """Deterministic reduction over a pixel's events; only processed events count."""
    events_count = 0
    conversions_count = 0
    revenue: list[float] = []
    for event in events:
        if event.processing_state != "processed":
            continue
        delta = counter_delta(event)
        events_count += delta.events_count
        conversions_count += delta.conversions_count
        if delta.conversions_count:
            revenue.append(delta.revenue_total)
    return PixelCounters(events_count, conversions_count, math.fsum(revenue))


def conversion_summary(events: Sequence, event_name: str, rules: Sequence[Rule | dict]) -> ConversionSummary:
    """Summary fields for one Conversion over all of its pixel's events."""
    processed = [e for e in events if e.processing_state == "processed"]
    candidates = [e for e in processed if e.event_name == event_name]
    result = conversion_analytics(candidates, rules)
    total = result["totalConversions"]
    return ConversionSummary(
        total_conversions=total,
        total_value=result["totalValue"],
        average_value=result["averageValue"],
        conversion_rate=round(total / len(processed) * 100, 2) if processed else 0.0,
    )
