"""
Session cancellation refund policy.

    >= 24h before the session  -> 90% refund
    0-24h before the session   -> 60% refund
    after the session started  -> no refund
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..models import practice_now

REFUND_POLICY = {
    "before24Hours": "90% refund (10% cancellation fee)",
    "within24Hours": "60% refund (40% cancellation fee)",
    "afterSession": "No refund available",
}


def calculate_refund_percentage(hours_before_session: float) -> int:
    if hours_before_session >= 24:
        return 90
    if hours_before_session >= 0:
        return 60
    return 0


def calculate_refund(
    session_time: datetime, booked_rate: float, cancellation_time: Optional[datetime] = None
) -> dict:
    """Refund breakdown for cancelling a session booked at booked_rate"""
    cancellation_time = cancellation_time or practice_now()
    hours_before_session = (session_time - cancellation_time).total_seconds() / 3600
    percentage = calculate_refund_percentage(hours_before_session)
    refund_amount = float(
        (Decimal(str(booked_rate)) * percentage / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    )

    return {
        "originalAmount": booked_rate,
        "refundAmount": refund_amount,
        "refundPercentage": percentage,
        "hoursBeforeSession": max(0.0, hours_before_session),
        "canRefund": refund_amount > 0,
    }
