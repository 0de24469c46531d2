"""Five-field cron matching and the once-per-minute run guard.

Supported per-field syntax (one form per field, no mixing)::

    *        every value
    7        exact value
    */15     value % 15 == 0
    0-30/10  0 <= value <= 30 and (value - 0) % 10 == 0
    1-5      inclusive range
    1,3,5    list

All fields are evaluated against the process-local wall clock. Day of week
counts Sunday as 0; a literal ``7`` passes validation but never matches.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from wallet_cron.errors import CronSyntaxError

FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))


def _local(at: datetime) -> datetime:
    if at.tzinfo is not None:
        return at.astimezone().replace(tzinfo=None)
    return at


def _field_values(at: datetime) -> tuple[int, int, int, int, int]:
    return (at.minute, at.hour, at.day, at.month, (at.weekday() + 1) % 7)


def _to_int(text: str) -> Optional[int]:
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        return None
    return int(text)


def _parse_range(text: str) -> Optional[tuple[int, int]]:
    start, sep, end = text.partition("-")
    if not sep:
        return None
    lo, hi = _to_int(start), _to_int(end)
    if lo is None or hi is None:
        return None
    return lo, hi


def match_field(field: str, value: int) -> bool:
    """Return whether a single cron *field* admits *value*.

    Malformed fields simply do not match.
    """
    if field == "*":
        return True

    exact = _to_int(field)
    if exact is not None:
        return exact == value

    if "/" in field:
        range_part, _, step_part = field.partition("/")
        step = _to_int(step_part)
        if not step:
            return False
        if range_part == "*":
            return value % step == 0
        bounds = _parse_range(range_part)
        if bounds is None:
            return False
        lo, hi = bounds
        return lo <= value <= hi and (value - lo) % step == 0

    if "-" in field:
        bounds = _parse_range(field)
        if bounds is None:
            return False
        lo, hi = bounds
        return lo <= value <= hi

    if "," in field:
        return value in {_to_int(item) for item in field.split(",")}

    return False


def matches(expression: str, at: datetime) -> bool:
    """Return whether *expression* is scheduled for the minute containing *at*."""
    parts = expression.split()
    if len(parts) != 5:
        return False
    values = _field_values(_local(at))
    return all(match_field(field, value) for field, value in zip(parts, values))


def same_minute(a: datetime, b: datetime) -> bool:
    """Compare two instants by local calendar fields down to the minute."""
    a, b = _local(a), _local(b)
    return (a.year, a.month, a.day, a.hour, a.minute) == (
        b.year, b.month, b.day, b.hour, b.minute,
    )


def should_run(
    expression: str,
    last_run_time: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Return ``True`` if the job is due now and has not run this minute."""
    if now is None:
        now = datetime.now()
    if not matches(expression, now):
        return False
    if last_run_time is not None and same_minute(last_run_time, now):
        return False
    return True


# ---------------------------------------------------------------------------
# Validation (used when jobs are created, not at match time)
# ---------------------------------------------------------------------------


def _validate_field(field: str, name: str, lo: int, hi: int) -> None:
    def _check(value: Optional[int], text: str) -> int:
        if value is None:
            raise CronSyntaxError(f"Invalid {name} value '{text}'")
        if not lo <= value <= hi:
            raise CronSyntaxError(f"{name} value {value} out of range {lo}-{hi}")
        return value

    def _check_range(text: str) -> None:
        bounds = _parse_range(text)
        if bounds is None:
            raise CronSyntaxError(f"Invalid {name} range '{text}'")
        start = _check(bounds[0], text)
        end = _check(bounds[1], text)
        if start > end:
            raise CronSyntaxError(f"{name} range '{text}' is reversed")

    if field == "*":
        return
    if "/" in field:
        range_part, _, step_part = field.partition("/")
        step = _to_int(step_part)
        if not step:
            raise CronSyntaxError(f"Invalid {name} step '{step_part}'")
        if range_part != "*":
            _check_range(range_part)
        return
    if "-" in field:
        _check_range(field)
        return
    if "," in field:
        for item in field.split(","):
            _check(_to_int(item), item)
        return
    _check(_to_int(field), field)


def validate_expression(expression: str) -> None:
    """Raise :class:`CronSyntaxError` unless *expression* is a valid 5-field cron."""
    parts = expression.split()
    if len(parts) != 5:
        raise CronSyntaxError(
            f"Invalid cron schedule format '{expression}'. Expected 5 fields: * * * * *"
        )
    for field, name, (lo, hi) in zip(parts, FIELD_NAMES, FIELD_BOUNDS):
        _validate_field(field, name, lo, hi)


def is_valid_expression(expression: str) -> bool:
    try:
        validate_expression(expression)
    except CronSyntaxError:
        return False
    return True
