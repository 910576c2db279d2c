# backend/msa_inventory/core/clock.py
"""
Injectable time source.

Services receive a Clock through their constructor instead of calling
``datetime.now()`` so that sweeps, penalties and the scheduler can be driven
with a synthetic clock in tests.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Test clock that only moves when told to."""

    def __init__(self, fixed_time: Optional[datetime] = None):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._fixed_time

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        """Advance by ``seconds`` plus any ``timedelta`` keyword arguments."""
        self._fixed_time = self._fixed_time + timedelta(seconds=seconds, **kwargs)
        return self._fixed_time


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime) -> str:
    return ensure_utc(value).isoformat()
