"""Billing period arithmetic.

Parses billing period durations into seconds and computes period_end
moves. Timestamps and durations share one unit: whole seconds.
"""

import re
from typing import Union

from recurring_billing.errors import InvalidArgumentError

# Seconds in common time units
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR
SECONDS_PER_WEEK = 7 * SECONDS_PER_DAY
SECONDS_PER_MONTH = 30 * SECONDS_PER_DAY  # Standard approximation for billing
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY  # Standard approximation for billing

_DATE_UNITS = {
    "D": SECONDS_PER_DAY,
    "W": SECONDS_PER_WEEK,
    "M": SECONDS_PER_MONTH,
    "Y": SECONDS_PER_YEAR,
}
_TIME_UNITS = {
    "H": SECONDS_PER_HOUR,
    "M": SECONDS_PER_MINUTE,
    "S": 1,
}


def parse_billing_period(period: Union[int, str]) -> int:
    """Parse a billing period to seconds.

    Accepts a positive integer number of seconds, or an ISO 8601 duration
    string with a single unit:
    - P[n]D, P[n]W, P[n]M, P[n]Y - days, weeks, months (30 days), years (365 days)
    - PT[n]H, PT[n]M, PT[n]S - hours, minutes, seconds

    Args:
        period: Seconds, or ISO 8601 duration string (e.g., "P1M", "P7D", "PT30S")

    Returns:
        Duration in seconds

    Raises:
        InvalidArgumentError: If the period is invalid, unsupported or not positive

    Examples:
        >>> parse_billing_period("P1D")
        86400

        >>> parse_billing_period("P1M")
        2592000

        >>> parse_billing_period(30)
        30
    """
    if isinstance(period, bool):
        raise InvalidArgumentError("Period must be an integer or a duration string")

    if isinstance(period, int):
        return validate_period_duration(period)

    if not period or not isinstance(period, str):
        raise InvalidArgumentError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise InvalidArgumentError(f"Invalid period format: '{period}'. Must start with 'P'")

    match = re.match(r"^P(?:(\d+)?([DWMY])|T(\d+)?([HMS]))$", period)
    if not match:
        raise InvalidArgumentError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y, PT[n]H, PT[n]M, PT[n]S"
        )

    date_number, date_unit, time_number, time_unit = match.groups()
    if date_unit:
        number = int(date_number) if date_number else 1
        seconds = number * _DATE_UNITS[date_unit]
    else:
        number = int(time_number) if time_number else 1
        seconds = number * _TIME_UNITS[time_unit]

    return validate_period_duration(seconds)


def format_billing_period(seconds: int) -> str:
    """Convert seconds back to an ISO 8601 duration string.

    Uses the largest unit that divides the duration exactly.

    Examples:
        >>> format_billing_period(2592000)
        'P1M'

        >>> format_billing_period(90)
        'PT90S'
    """
    validate_period_duration(seconds)

    for unit, size in (("Y", SECONDS_PER_YEAR), ("M", SECONDS_PER_MONTH), ("W", SECONDS_PER_WEEK), ("D", SECONDS_PER_DAY)):
        if seconds % size == 0:
            return f"P{seconds // size}{unit}"

    for unit, size in (("H", SECONDS_PER_HOUR), ("M", SECONDS_PER_MINUTE)):
        if seconds % size == 0:
            return f"PT{seconds // size}{unit}"

    return f"PT{seconds}S"


def validate_period_duration(period_duration: int) -> int:
    """Return period_duration if it is a positive integer, else raise InvalidArgumentError."""
    if isinstance(period_duration, bool) or not isinstance(period_duration, int):
        raise InvalidArgumentError(f"Period duration must be an integer, got: {period_duration!r}")
    if period_duration <= 0:
        raise InvalidArgumentError(f"Period duration must be positive, got: {period_duration}")
    return period_duration


def validate_amount(amount: int) -> int:
    """Return amount if it is a positive integer, else raise InvalidArgumentError."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidArgumentError(f"Amount must be an integer, got: {amount!r}")
    if amount <= 0:
        raise InvalidArgumentError(f"Amount must be positive, got: {amount}")
    return amount


def initial_period_end(now: int, period_duration: int) -> int:
    """Period end for a subscription started at `now` (first period already paid)."""
    return now + validate_period_duration(period_duration)


def next_period_end(period_end: int, period_duration: int) -> int:
    """Advance period_end by exactly one period.

    Anchored on the previous period_end, not on the charge time, so late
    charges never shift the billing schedule.
    """
    return period_end + validate_period_duration(period_duration)


def is_charge_due(period_end: int, now: int) -> bool:
    return now >= period_end


def is_within_paid_period(period_end: int, now: int) -> bool:
    return now <= period_end


def periods_overdue(period_end: int, period_duration: int, now: int) -> int:
    """Number of whole periods owed at `now`.

    0 before period_end, 1 from period_end up to (not including)
    period_end + period_duration, and so on.

    Examples:
        >>> periods_overdue(30, 30, 29)
        0

        >>> periods_overdue(30, 30, 30)
        1

        >>> periods_overdue(30, 30, 95)
        3
    """
    validate_period_duration(period_duration)
    if now < period_end:
        return 0
    return (now - period_end) // period_duration + 1
