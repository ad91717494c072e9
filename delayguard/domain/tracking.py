from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class ShipmentStatus(str, Enum):
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    DELAYED = "delayed"
    EXCEPTION = "exception"
    PENDING = "pending"
    UNKNOWN = "unknown"


class DelayReason(str, Enum):
    NONE = "none"
    DATE_SLIP = "date_slip"
    DELAYED_STATUS = "delayed_status"
    EXCEPTION_STATUS = "exception_status"
    MISSING_DATA = "missing_data"


@dataclass(frozen=True)
class TrackingEvent:
    # Carrier scan events are informational and never drive the delay decision.
    timestamp: datetime | None
    description: str


@dataclass(frozen=True)
class TrackingSnapshot:
    tracking_number: str
    carrier_code: str
    status: ShipmentStatus
    estimated_delivery_date: date | None
    original_estimated_delivery_date: date | None
    events: tuple[TrackingEvent, ...] = field(default_factory=tuple)
    tracking_url: str | None = None


@dataclass(frozen=True)
class DelayVerdict:
    is_delayed: bool
    delay_days: int
    delay_reason: DelayReason
    error: str | None = None

    def __post_init__(self) -> None:
        # Reject contradictory verdicts at construction so callers never branch on impossible states.
        if self.delay_days < 0:
            raise ValueError("delay_days must be non-negative")
        if self.is_delayed and self.delay_reason == DelayReason.NONE:
            raise ValueError("delayed verdicts require a delay_reason")
        if self.error is not None and (self.is_delayed or self.delay_days != 0):
            raise ValueError("error verdicts cannot be delayed")
