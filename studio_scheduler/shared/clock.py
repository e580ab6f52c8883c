"""Facility-local clock.

Every stored date, time and instant is a naive facility-local value. Services
accept ``now``/``today`` as arguments; only the HTTP and job edges read the
clock.
"""

from datetime import date, datetime


def facility_now() -> datetime:
    return datetime.now()


def facility_today() -> date:
    return facility_now().date()


def weekday_sunday_first(value: date) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (value.weekday() + 1) % 7


class FacilityClock:
    def now(self) -> datetime:
        return facility_now()

    def today(self) -> date:
        return self.now().date()


class FixedClock(FacilityClock):
    """Pinned clock for jobs replaying a day and for tests."""

    def __init__(self, value: datetime) -> None:
        self.value = value

    def now(self) -> datetime:
        return self.value
