"""
Date helpers shared by the ledger and billing services.

Timestamps are stored as naive UTC, matching the DateTime columns.
"""
import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Advance by calendar months, clamping the day to the target month length.

    Jan 31 + 1 month -> Feb 28 (or 29), not Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def from_epoch(epoch_seconds: int) -> datetime:
    """Gateway epoch seconds -> naive UTC datetime"""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).replace(tzinfo=None)
