from datetime import datetime, timedelta, timezone

import pytest

from msa_inventory.models.transaction_model import PenaltyType
from msa_inventory.services.penalty_service import calculate_late_fee, days_late

DUE = datetime(2024, 1, 10, 17, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("returned, expected_days", [
    (DUE - timedelta(days=1), -1),
    (DUE, 0),
    (DUE + timedelta(minutes=1), 1),
    (DUE + timedelta(days=1), 1),
    (DUE + timedelta(days=2, hours=1), 3),
])
def test_days_late_rounds_started_days_up(returned, expected_days):
    assert days_late(DUE, returned) == expected_days


def test_on_time_return_has_no_fee():
    assert calculate_late_fee(DUE, DUE) is None
    assert calculate_late_fee(DUE, DUE - timedelta(hours=3)) is None


def test_late_fee_amount_and_reason():
    returned = DUE + timedelta(days=2, hours=4)
    penalty = calculate_late_fee(DUE, returned, issued_by="admin-1")

    assert penalty.type == PenaltyType.LATE_FEE
    assert penalty.amount == 15.0
    assert penalty.currency == "USD"
    assert penalty.reason == "Item returned 3 day(s) late"
    assert penalty.is_paid is False
    assert penalty.issued_date == returned
    assert penalty.issued_by == "admin-1"


def test_custom_rate_and_currency():
    penalty = calculate_late_fee(DUE, DUE + timedelta(days=4), daily_rate=2.5, currency="EUR")

    assert penalty.amount == 10.0
    assert penalty.currency == "EUR"


def test_accrued_fee_uses_now_when_not_returned():
    penalty = calculate_late_fee(DUE, now=DUE + timedelta(hours=30))
    assert penalty.amount == 10.0


def test_naive_datetimes_are_treated_as_utc():
    naive_due = datetime(2024, 1, 10, 17, 0)
    assert days_late(naive_due, DUE + timedelta(days=1)) == 1


def test_requires_a_return_time():
    with pytest.raises(ValueError):
        calculate_late_fee(DUE)


def test_rejects_negative_rate():
    with pytest.raises(ValueError):
        calculate_late_fee(DUE, DUE + timedelta(days=1), daily_rate=-1)
