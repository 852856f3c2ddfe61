from __future__ import annotations

from datetime import datetime, timedelta

CRON_SCAN_LIMIT = 1000

# (min, max) per field: minute, hour, day-of-month, month, day-of-week (1=Mon .. 7=Sun).
_FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (1, 7))


def next_date(expression: str, after: datetime, *, max_iterations: int = CRON_SCAN_LIMIT) -> datetime | None:
    """Return the first minute strictly after ``after`` matching a 5-field cron expression.

    Scans forward minute by minute and gives up after ``max_iterations`` minutes,
    returning ``None``. Malformed expressions also return ``None``.
    """
    fields = expression.split()
    if len(fields) != 5:
        return None
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(max(0, max_iterations)):
        if _matches(fields, candidate):
            return candidate
        candidate += timedelta(minutes=1)
    return None


def is_valid_expression(expression: str) -> bool:
    fields = expression.split()
    if len(fields) != 5:
        return False
    for field, (minimum, maximum) in zip(fields, _FIELD_BOUNDS):
        if not all(_is_valid_part(part, minimum, maximum) for part in field.split(",")):
            return False
    return True


def next_heartbeat(interval_minutes: int, after: datetime) -> datetime:
    return after + timedelta(minutes=max(1, interval_minutes))


def _matches(fields: list[str], candidate: datetime) -> bool:
    values = (
        candidate.minute,
        candidate.hour,
        candidate.day,
        candidate.month,
        candidate.isoweekday(),
    )
    for field, value, (minimum, maximum) in zip(fields, values, _FIELD_BOUNDS):
        if not _field_matches(field, value, minimum, maximum):
            return False
    return True


def _field_matches(field: str, value: int, minimum: int, maximum: int) -> bool:
    return any(_part_matches(part, value, minimum, maximum) for part in field.split(","))


def _part_matches(part: str, value: int, minimum: int, maximum: int) -> bool:
    part = part.strip()
    if not part:
        return False
    if part == "*":
        return True

    base, step = part, 1
    if "/" in part:
        base, raw_step = part.split("/", 1)
        step_value = _to_int(raw_step)
        if step_value is None or step_value <= 0:
            return False
        step = step_value

    if base == "*":
        # "*/n" counts from zero in every field, so "*/2" day-of-week means Tue/Thu/Sat.
        return minimum <= value <= maximum and value % step == 0
    if "-" in base:
        raw_start, raw_end = base.split("-", 1)
        start_value = _to_int(raw_start)
        end_value = _to_int(raw_end)
        if start_value is None or end_value is None:
            return False
        start, end = start_value, end_value
    else:
        exact = _to_int(base)
        if exact is None:
            return False
        if "/" in part:
            # "a/n": every n-th value starting at a.
            start, end = exact, maximum
        else:
            return minimum <= exact <= maximum and value == exact

    if start > end or start < minimum or end > maximum:
        return False
    if value < start or value > end:
        return False
    return (value - start) % step == 0


def _is_valid_part(part: str, minimum: int, maximum: int) -> bool:
    # A part is valid when it could match at least one value in range.
    return any(_part_matches(part, value, minimum, maximum) for value in range(minimum, maximum + 1))


def _to_int(raw: str) -> int | None:
    raw = raw.strip()
    if not raw.isdigit():
        return None
    return int(raw)
