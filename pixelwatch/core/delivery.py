"""
Event delivery contract.

An event is processed only if it passes validation and, when a delivery
endpoint is configured, the endpoint accepts it. Any failure is raised as
ProcessingError; the processor records the message on the event.

Validation:
  - event_name present; standard events must use a catalog name
  - timestamp no more than 5 minutes ahead, no older than 7 days
  - parameters.value (if present) is a non-negative number
  - parameters.currency (if present) is a 3-letter code
"""

import datetime
import re

import httpx

from pixelwatch.config import get_settings
from pixelwatch.core.clock import as_utc, utcnow
from pixelwatch.core.errors import ProcessingError
from pixelwatch.core.rules import parse_number

import structlog

logger = structlog.get_logger()

STANDARD_EVENTS: frozenset[str] = frozenset({
    "PageView",
    "ViewContent",
    "Search",
    "AddToCart",
    "AddToWishlist",
    "InitiateCheckout",
    "AddPaymentInfo",
    "Purchase",
    "Lead",
    "CompleteRegistration",
    "Contact",
    "CustomizeProduct",
    "Donate",
    "FindLocation",
    "Schedule",
    "StartTrial",
    "SubmitApplication",
    "Subscribe",
})

EVENT_TYPES = ("standard", "custom")
EVENT_SOURCES = ("web", "server", "mobile")

MAX_FUTURE_SKEW = datetime.timedelta(minutes=5)
DELIVERY_WINDOW = datetime.timedelta(days=7)

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")


def validate_for_delivery(event, now: datetime.datetime | None = None) -> None:
    """Raise ProcessingError if the event cannot be delivered."""
    now = now or utcnow()

    name = (event.event_name or "").strip()
    if not name:
        raise ProcessingError("Missing event name")
    if event.event_type not in EVENT_TYPES:
        raise ProcessingError(f"Unknown event type '{event.event_type}'")
    if event.event_type == "standard" and name not in STANDARD_EVENTS:
        raise ProcessingError(f"'{name}' is not a standard event; send it as a custom event")

    ts = as_utc(event.timestamp)
    if ts is None:
        raise ProcessingError("Missing event timestamp")
    if ts > now + MAX_FUTURE_SKEW:
        raise ProcessingError("Event timestamp is in the future")
    if ts < now - DELIVERY_WINDOW:
        raise ProcessingError("Event is older than the 7 day delivery window")

    params = event.parameters
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ProcessingError("Event parameters must be an object")

    if params.get("value") is not None:
        value = parse_number(params["value"])
        if value is None:
            raise ProcessingError("Parameter 'value' is not numeric")
        if value < 0:
            raise ProcessingError("Parameter 'value' is negative")

    currency = params.get("currency")
    if currency is not None and not (isinstance(currency, str) and _CURRENCY_RE.match(currency)):
        raise ProcessingError("Parameter 'currency' must be a 3-letter code")


def delivery_payload(event) -> dict:
    return {
        "event_id": str(event.id),
        "pixel_id": str(event.pixel_id),
        "event_name": event.event_name,
        "event_type": event.event_type,
        "event_time": int(as_utc(event.timestamp).timestamp()),
        "action_source": event.source,
        "custom_data": event.parameters or {},
    }


class EventDeliverer:
    """Validates, then forwards to the configured endpoint (if any)."""

    def __init__(self, endpoint: str | None = None, timeout: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.endpoint = settings.delivery_endpoint if endpoint is None else endpoint
        self.timeout = timeout or settings.delivery_timeout_seconds
        self._transport = transport

    async def deliver(self, event) -> None:
        validate_for_delivery(event)
        if not self.endpoint:
            return

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.endpoint, json=delivery_payload(event))
        except httpx.HTTPError as exc:
            raise ProcessingError(f"Delivery failed: {exc.__class__.__name__}") from exc

        if resp.status_code >= 300:
            logger.warning("delivery_rejected", event_id=str(event.id), status=resp.status_code)
            raise ProcessingError(f"Delivery rejected with HTTP {resp.status_code}")
