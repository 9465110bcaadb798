"""Recurrence resolver — pure date arithmetic.

``resolve(rule, reference)`` answers "when does this repeat next" for the
closed set of rule kinds. ``occurrences`` walks the resolver forward to list
every date a rule produces inside a window.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Iterator

from src.data.models import (
    Daily,
    IntervalDays,
    MonthlyOnDay,
    MonthlyOnLastDay,
    NoRepeat,
    RecurrenceRule,
    WeeklyOnWeekdays,
)

logger = logging.getLogger(__name__)

WEEKDAY_SEARCH_DAYS = 14
MAX_MONTHLY_DAY = 28
MAX_WALK_STEPS = 100

_ONE_DAY = timedelta(days=1)


def resolve(rule: RecurrenceRule, reference: date) -> date | None:
    """Return the next occurrence strictly after ``reference``.

    Returns None for NoRepeat and for completion-gated intervals, which have
    no calendar-time successor.
    """
    if isinstance(rule, NoRepeat):
        return None

    if isinstance(rule, Daily):
        return reference + _ONE_DAY

    if isinstance(rule, WeeklyOnWeekdays):
        if not rule.weekdays:
            return reference + _ONE_DAY
        return _next_weekday(reference, rule.weekdays)

    if isinstance(rule, MonthlyOnDay):
        year, month = _next_month(reference.year, reference.month)
        return date(year, month, min(rule.day, MAX_MONTHLY_DAY))

    if isinstance(rule, MonthlyOnLastDay):
        year, month = _next_month(reference.year, reference.month)
        return date(year, month, calendar.monthrange(year, month)[1])

    if isinstance(rule, IntervalDays):
        if rule.completion_gated:
            return None
        return reference + timedelta(days=rule.n)

    raise TypeError(f"Unknown recurrence rule: {rule!r}")


def _next_weekday(reference: date, weekdays: frozenset[int]) -> date:
    """Earliest date after ``reference`` whose ISO weekday is in the set.

    Searches two weeks ahead; falls back to the next day if nothing matches
    (only reachable with out-of-range weekday values).
    """
    candidate = reference + _ONE_DAY
    for _ in range(WEEKDAY_SEARCH_DAYS):
        if candidate.isoweekday() in weekdays:
            return candidate
        candidate += _ONE_DAY
    logger.warning("No weekday in %s within %d days of %s", sorted(weekdays), WEEKDAY_SEARCH_DAYS, reference)
    return reference + _ONE_DAY


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


# ---------------------------------------------------------------------------
# Walking a rule across a window
# ---------------------------------------------------------------------------


def walk_seed(rule: RecurrenceRule, start: date, anchor: date | None = None) -> date:
    """Reference date from which resolving forward lands on the first
    occurrence on or after ``start``.

    Day-based rules seed from the day before ``start``. Monthly rules always
    jump a month, so they seed one month earlier to keep ``start``'s own month
    reachable. Interval chains stay aligned to ``anchor`` (the template's
    start date) rather than to whatever day the walk happens to begin.
    """
    if isinstance(rule, (MonthlyOnDay, MonthlyOnLastDay)):
        year, month = _previous_month(start.year, start.month)
        return date(year, month, 1)

    if isinstance(rule, IntervalDays) and anchor is not None:
        if start <= anchor:
            return anchor - timedelta(days=rule.n)
        steps = -(-(start - anchor).days // rule.n)   # ceil
        return anchor + timedelta(days=(steps - 1) * rule.n)

    return start - _ONE_DAY


def occurrences(
    rule: RecurrenceRule,
    start: date,
    end: date,
    anchor: date | None = None,
    max_steps: int = MAX_WALK_STEPS,
) -> Iterator[date]:
    """Yield every date in [start, end] produced by walking ``rule`` forward.

    Dates before ``anchor`` are never produced. The walk stops once it passes
    ``end``, when the rule has no successor, or after ``max_steps`` resolver
    calls.
    """
    if anchor is not None and anchor > start:
        start = anchor
    if start > end:
        return

    current = walk_seed(rule, start, anchor)
    for _ in range(max_steps):
        nxt = resolve(rule, current)
        if nxt is None or nxt > end:
            return
        if nxt <= current:
            logger.error("Resolver did not advance for %r at %s", rule, current)
            return
        if nxt >= start:
            yield nxt
        current = nxt
    logger.warning("Stopped walking %r after %d steps (window %s..%s)", rule, max_steps, start, end)
