"""
Date helpers for rolling purchase windows.
"""
from datetime import date, datetime
from typing import Union

from dateutil import parser as date_parser
from dateutil import tz
from dateutil.relativedelta import relativedelta


def today() -> date:
    """Current UTC calendar date."""
    return datetime.utcnow().date()


def to_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def add_months(value: Union[date, datetime], months: int) -> date:
    """
    Calendar-month arithmetic, clamped to month end.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    return to_date(value) + relativedelta(months=months)


def subtract_months(value: Union[date, datetime], months: int) -> date:
    return to_date(value) - relativedelta(months=months)


def parse_timestamp(value) -> datetime:
    """
    Parse an RFC 3339 timestamp from a POS payload into a naive UTC datetime.

    Returns utcnow() when the value is missing.
    """
    if not value:
        return datetime.utcnow()
    if isinstance(value, datetime):
        return value
    parsed = date_parser.isoparse(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz.UTC).replace(tzinfo=None)
    return parsed
