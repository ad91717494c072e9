from __future__ import annotations

import hashlib
import json
from datetime import date

from delayguard.domain.tracking import DelayReason, DelayVerdict, ShipmentStatus, TrackingSnapshot

MISSING_DATE_ERROR = "Missing delivery date information"


def _slip_days(estimated: date, original: date) -> int:
    # Whole calendar days between the promise and the current estimate; early arrival counts as zero.
    diff = (estimated - original).days
    return max(0, diff)


def evaluate_delay(snapshot: TrackingSnapshot) -> DelayVerdict:
    """Decide whether a shipment is delayed relative to its original promise.

    Rules are applied in order:

    1. Either delivery date missing -> error verdict, not delayed.
    2. Carrier status DELAYED -> delayed, reason DELAYED_STATUS.
    3. Carrier status EXCEPTION -> delayed, reason EXCEPTION_STATUS.
    4. Estimated date later than the original -> delayed, reason DATE_SLIP.
    5. Otherwise not delayed.

    An explicit carrier status wins over the dates, so a DELAYED status with
    unchanged dates still reports a delay of zero days. The function is pure
    and performs no I/O.
    """
    if snapshot.estimated_delivery_date is None or snapshot.original_estimated_delivery_date is None:
        return DelayVerdict(
            is_delayed=False,
            delay_days=0,
            delay_reason=DelayReason.MISSING_DATA,
            error=MISSING_DATE_ERROR,
        )
    days = _slip_days(snapshot.estimated_delivery_date, snapshot.original_estimated_delivery_date)
    if snapshot.status == ShipmentStatus.DELAYED:
        return DelayVerdict(is_delayed=True, delay_days=days, delay_reason=DelayReason.DELAYED_STATUS)
    if snapshot.status == ShipmentStatus.EXCEPTION:
        return DelayVerdict(is_delayed=True, delay_days=days, delay_reason=DelayReason.EXCEPTION_STATUS)
    if days > 0:
        return DelayVerdict(is_delayed=True, delay_days=days, delay_reason=DelayReason.DATE_SLIP)
    return DelayVerdict(is_delayed=False, delay_days=0, delay_reason=DelayReason.NONE)


def meets_delay_threshold(verdict: DelayVerdict, threshold_days: int) -> bool:
    # Thresholds only filter minor date slips; explicit carrier delay/exception statuses always qualify.
    if not verdict.is_delayed:
        return False
    if verdict.delay_reason != DelayReason.DATE_SLIP:
        return True
    return verdict.delay_days >= max(1, int(threshold_days))


def compute_delay_signature(
    *,
    order_id: str,
    tracking_number: str,
    delay_reason: DelayReason,
    delay_days: int,
) -> str:
    # Canonical JSON keeps the digest stable across processes and Python versions.
    canonical = json.dumps(
        {
            "order_id": order_id,
            "tracking_number": tracking_number,
            "delay_reason": DelayReason(delay_reason).value,
            "delay_days": int(delay_days),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"delay:{digest[:32]}"
