"""Occurrence calculation for recurrence rules.

Pure calendar arithmetic: given a rule and the current occurrence, compute
the next one. Nothing here touches a store or reads the clock, so every
function can be exercised with plain ``date`` values.

Weekdays follow the rule convention 0=Sunday .. 6=Saturday, not Python's
``date.weekday()`` (0=Monday).

When a target month is shorter than the requested day, the result is
clamped to the last day of that month (Jan 31 + 1 month -> Feb 28/29). It
never rolls over into the following month.
"""

import calendar
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from bizdesk.exceptions import CalculationError, RecurrenceValidationError


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


FREQUENCIES = frozenset(f.value for f in Frequency)

WEEKDAY_NAMES = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")

# Upper bound for preview requests
MAX_PREVIEW_OCCURRENCES = 100


# =============================================================================
# Calendar helpers
# =============================================================================


def sunday_weekday(day: date) -> int:
    """Weekday of ``day`` with Sunday=0 .. Saturday=6."""
    return day.isoweekday() % 7


def clamp_day(year: int, month: int, day: int) -> date:
    """Build a date, clamping ``day`` to the last day of the month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def add_months(day: date, months: int, day_of_month: int | None = None) -> date:
    """Shift ``day`` by whole months.

    Keeps the day of month (or uses ``day_of_month`` when given), clamped to
    the length of the target month.
    """
    index = day.year * 12 + (day.month - 1) + months
    year, month_index = divmod(index, 12)
    return clamp_day(year, month_index + 1, day_of_month or day.day)


def add_years(day: date, years: int) -> date:
    """Shift ``day`` by whole years; Feb 29 lands on Feb 28 in common years."""
    return clamp_day(day.year + years, day.month, day.day)


def next_weekday_occurrence(from_date: date, weekdays: Iterable[int], interval: int = 1) -> date:
    """Next date after ``from_date`` falling on one of ``weekdays``.

    With W the sorted weekdays and c the weekday of ``from_date``:

    * if some w in W has w > c, advance w - c days (same week);
    * otherwise wrap: advance 7 - c + W[0] days into the following week.

    ``from_date``'s own weekday never matches, so a Wednesday with
    W = {Mon, Wed} moves to the next Monday. For ``interval`` > 1 a further
    ``(interval - 1) * 7`` days are added to skip whole weeks.
    """
    ordered = sorted(set(weekdays))
    if not ordered:
        raise CalculationError("weekday constraint is empty")

    current = sunday_weekday(from_date)
    later = [w for w in ordered if w > current]
    if later:
        offset = later[0] - current
    else:
        offset = 7 - current + ordered[0]

    return from_date + timedelta(days=offset + (interval - 1) * 7)


def occurrence_date(value: date | datetime) -> date:
    """Calendar date of an occurrence timestamp."""
    if isinstance(value, datetime):
        return value.date()
    return value


# =============================================================================
# Validation
# =============================================================================


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def rule_problems(rule: Any) -> list[str]:
    """Collect every consistency problem of a rule."""
    problems: list[str] = []

    frequency = rule.frequency
    if frequency not in FREQUENCIES:
        problems.append(f"unrecognized frequency '{frequency}'")

    interval = rule.interval
    if not _is_int(interval) or interval < 1:
        problems.append(f"interval must be a positive integer, got {interval!r}")

    if rule.start_date is None:
        problems.append("start date is required")

    weekdays = rule.weekdays
    if weekdays:
        if frequency != Frequency.WEEKLY.value:
            problems.append("weekday constraint only applies to weekly rules")
        invalid = [w for w in weekdays if not _is_int(w) or not 0 <= w <= 6]
        if invalid:
            problems.append(f"weekdays must be between 0 (Sunday) and 6 (Saturday), got {invalid}")

    day_of_month = rule.day_of_month
    if day_of_month is not None:
        if frequency != Frequency.MONTHLY.value:
            problems.append("day of month constraint only applies to monthly rules")
        if not _is_int(day_of_month) or not 1 <= day_of_month <= 31:
            problems.append(f"day of month must be between 1 and 31, got {day_of_month!r}")

    if rule.start_date and rule.end_date and rule.end_date < rule.start_date:
        problems.append("end date is before start date")

    if rule.target_type == "invoice" and rule.owner_type != "client":
        problems.append("invoice rules must belong to a client")

    return problems


def validate_rule(rule: Any) -> None:
    """Raise ``RecurrenceValidationError`` if the rule is inconsistent."""
    problems = rule_problems(rule)
    if problems:
        raise RecurrenceValidationError(problems, rule_id=getattr(rule, "id", None))


# =============================================================================
# Occurrence calculation
# =============================================================================


def _next_date(rule: Any, from_date: date) -> date:
    frequency = Frequency(rule.frequency)
    interval = rule.interval

    try:
        if frequency is Frequency.DAILY:
            return from_date + timedelta(days=interval)

        if frequency is Frequency.WEEKLY:
            if rule.weekdays:
                return next_weekday_occurrence(from_date, rule.weekdays, interval)
            return from_date + timedelta(weeks=interval)

        if frequency is Frequency.MONTHLY:
            return add_months(from_date, interval, rule.day_of_month)

        return add_years(from_date, interval)
    except (OverflowError, ValueError) as e:
        raise CalculationError(
            f"cannot advance {from_date.isoformat()} by {interval} {frequency.value}: {e}",
            rule_id=getattr(rule, "id", None),
        ) from e


def compute_next_occurrence(rule: Any, from_value: date | datetime) -> date | datetime:
    """Next occurrence of ``rule`` after ``from_value``.

    Returns the same kind of value it was given: a ``datetime`` keeps its
    time of day and tzinfo, so the due timestamp never drifts.

    Raises:
        RecurrenceValidationError: the rule is inconsistent or has an
            unrecognized frequency.
        CalculationError: the arithmetic left the supported date range.
    """
    validate_rule(rule)

    if isinstance(from_value, datetime):
        next_day = _next_date(rule, from_value.date())
        return datetime.combine(next_day, from_value.timetz())

    return _next_date(rule, from_value)


def first_occurrence(rule: Any, on_or_after: date | None = None) -> date:
    """First date on or after the rule start that satisfies its constraints.

    ``on_or_after`` moves the anchor forward (used when reactivating a rule
    whose start date lies in the past).
    """
    validate_rule(rule)

    anchor = rule.start_date
    if on_or_after is not None and on_or_after > anchor:
        anchor = on_or_after

    frequency = Frequency(rule.frequency)

    if frequency is Frequency.WEEKLY and rule.weekdays:
        if sunday_weekday(anchor) in rule.weekdays:
            return anchor
        return next_weekday_occurrence(anchor, rule.weekdays)

    if frequency is Frequency.MONTHLY and rule.day_of_month:
        candidate = clamp_day(anchor.year, anchor.month, rule.day_of_month)
        if candidate >= anchor:
            return candidate
        return add_months(anchor, 1, rule.day_of_month)

    return anchor


def upcoming_occurrences(rule: Any, count: int) -> list[datetime]:
    """Preview the next ``count`` occurrences starting at ``rule.next_due_at``.

    Stops early at the rule's end date.
    """
    count = max(0, min(count, MAX_PREVIEW_OCCURRENCES))
    occurrences: list[datetime] = []
    current = rule.next_due_at

    while current is not None and len(occurrences) < count:
        if rule.end_date and occurrence_date(current) > rule.end_date:
            break
        occurrences.append(current)
        current = compute_next_occurrence(rule, current)

    return occurrences
