# backend/msa_inventory/services/penalty_service.py
"""
Late fee computation.

Pure functions: no storage, no clock reads. The manual return path and the
overdue sweep both call these with the times they already hold so they
always agree on the amount.
"""
import math
from datetime import datetime, timedelta
from typing import Optional

from msa_inventory.core.clock import ensure_utc
from msa_inventory.models.transaction_model import Penalty, PenaltyType

DEFAULT_DAILY_RATE = 5.0
DEFAULT_CURRENCY = "USD"
ONE_DAY = timedelta(days=1)


def days_late(expected_return_date: datetime, actual_return_date: datetime) -> int:
    """Whole days late, rounding any started day up; zero or negative means on time"""
    elapsed = ensure_utc(actual_return_date) - ensure_utc(expected_return_date)
    return math.ceil(elapsed / ONE_DAY)


def calculate_late_fee(
    expected_return_date: datetime,
    actual_return_date: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    daily_rate: float = DEFAULT_DAILY_RATE,
    currency: str = DEFAULT_CURRENCY,
    issued_by: Optional[str] = None,
) -> Optional[Penalty]:
    """
    Late fee for a loan returned at ``actual_return_date``.

    When the item is still out, pass ``now`` instead to get the fee accrued so
    far. Returns ``None`` when nothing is owed.
    """
    returned_at = actual_return_date or now
    if returned_at is None:
        raise ValueError("Either actual_return_date or now is required")
    if daily_rate < 0:
        raise ValueError("daily_rate cannot be negative")

    late = days_late(expected_return_date, returned_at)
    if late <= 0:
        return None

    return Penalty(
        type=PenaltyType.LATE_FEE,
        amount=late * daily_rate,
        currency=currency,
        reason=f"Item returned {late} day(s) late",
        issued_date=ensure_utc(returned_at),
        issued_by=issued_by,
        is_paid=False,
    )
