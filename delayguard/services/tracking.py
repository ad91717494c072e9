from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Mapping

from delayguard.core.errors import TrackingPayloadError
from delayguard.domain.tracking import ShipmentStatus, TrackingEvent, TrackingSnapshot


logger = logging.getLogger(__name__)

# ShipEngine two-letter status codes plus the long-form names other carriers send.
_STATUS_MAP: dict[str, ShipmentStatus] = {
    "ac": ShipmentStatus.PENDING,
    "ny": ShipmentStatus.PENDING,
    "at": ShipmentStatus.IN_TRANSIT,
    "it": ShipmentStatus.IN_TRANSIT,
    "pu": ShipmentStatus.IN_TRANSIT,
    "se": ShipmentStatus.IN_TRANSIT,
    "od": ShipmentStatus.IN_TRANSIT,
    "de": ShipmentStatus.DELIVERED,
    "dl": ShipmentStatus.DELAYED,
    "ex": ShipmentStatus.EXCEPTION,
    "un": ShipmentStatus.UNKNOWN,
    "accepted": ShipmentStatus.PENDING,
    "pending": ShipmentStatus.PENDING,
    "pre_transit": ShipmentStatus.PENDING,
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "picked_up": ShipmentStatus.IN_TRANSIT,
    "shipped": ShipmentStatus.IN_TRANSIT,
    "out_for_delivery": ShipmentStatus.IN_TRANSIT,
    "delivered": ShipmentStatus.DELIVERED,
    "delayed": ShipmentStatus.DELAYED,
    "exception": ShipmentStatus.EXCEPTION,
    "unknown": ShipmentStatus.UNKNOWN,
}


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    # Accept snake_case and camelCase spellings; first non-empty value wins.
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_status(value: Any) -> ShipmentStatus:
    if value is None:
        return ShipmentStatus.UNKNOWN
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    return _STATUS_MAP.get(key, ShipmentStatus.UNKNOWN)


def parse_delivery_date(value: Any, *, field_name: str = "date") -> date | None:
    # Collapse carrier timestamps to calendar dates; unparseable values count as missing.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text).date()
    except ValueError:
        logger.warning("tracking_date_unparseable field=%s value=%r", field_name, value)
        return None


def _parse_event_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _normalize_events(raw_events: Any) -> tuple[TrackingEvent, ...]:
    if not isinstance(raw_events, list):
        return ()
    events: list[TrackingEvent] = []
    for item in raw_events:
        if not isinstance(item, Mapping):
            continue
        events.append(
            TrackingEvent(
                timestamp=_parse_event_timestamp(_first(item, "occurred_at", "timestamp", "occurredAt")),
                description=str(_first(item, "description", "message") or ""),
            )
        )
    return tuple(events)


def normalize_tracking_payload(raw: Mapping[str, Any]) -> TrackingSnapshot:
    """Convert a carrier tracking payload into an immutable TrackingSnapshot.

    Only the tracking number is mandatory. Missing or malformed delivery
    dates are kept as ``None`` so the decision engine reports them as
    missing data instead of the normalizer failing the whole update.
    """
    if not isinstance(raw, Mapping):
        raise TrackingPayloadError("tracking payload must be an object")
    tracking_number = _first(raw, "tracking_number", "trackingNumber")
    if tracking_number is None or not str(tracking_number).strip():
        raise TrackingPayloadError("tracking payload is missing tracking_number")
    carrier_code = _first(raw, "carrier_code", "carrierCode", "carrier")
    tracking_url = _first(raw, "tracking_url", "trackingUrl")
    return TrackingSnapshot(
        tracking_number=str(tracking_number).strip(),
        carrier_code=str(carrier_code).strip().lower() if carrier_code else "unknown",
        status=normalize_status(_first(raw, "status_code", "statusCode", "status")),
        estimated_delivery_date=parse_delivery_date(
            _first(raw, "estimated_delivery_date", "estimatedDeliveryDate"),
            field_name="estimated_delivery_date",
        ),
        original_estimated_delivery_date=parse_delivery_date(
            _first(raw, "original_estimated_delivery_date", "originalEstimatedDeliveryDate"),
            field_name="original_estimated_delivery_date",
        ),
        events=_normalize_events(_first(raw, "events")),
        tracking_url=str(tracking_url).strip() if tracking_url else None,
    )
