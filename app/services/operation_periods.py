"""
Tax Practice Operations
Operation period calculator.

Maps a template's recurrence rule plus an anchor date and a run date to the
concrete, inclusive [period_start, period_end] date interval that a cycle
generated on that run date must cover.

Pure functions only: no DB access, no clock reads.  Unresolvable rules
(unknown type, custom rule without a positive interval) resolve to ``None``
so callers can count them as skips instead of errors.

Usage:
    from app.services.operation_periods import RecurrenceRule, resolve_period

    period = resolve_period(RecurrenceRule(type="monthly"), None, date(2024, 2, 29))
    # -> Period(start=date(2024, 2, 1), end=date(2024, 2, 29))
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

BIWEEKLY_DAYS = 14


@dataclass(frozen=True)
class RecurrenceRule:
    """Recurrence settings embedded in an operation template."""

    type: str
    interval_days: int | None = None
    is_active: bool = True
    auto_generate: bool = True


@dataclass(frozen=True)
class Period:
    """Inclusive date interval covered by one cycle."""

    start: date
    end: date

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __iter__(self):
        # Allows ``start, end = period``
        yield self.start
        yield self.end


# ── Calendar helpers ─────────────────────────────────────────────────────────

def week_start(day: date) -> date:
    """Monday of the week containing *day*."""
    return day - timedelta(days=day.weekday())


def week_period(day: date) -> Period:
    start = week_start(day)
    return Period(start, start + timedelta(days=6))


def month_period(day: date) -> Period:
    last_day = calendar.monthrange(day.year, day.month)[1]
    return Period(day.replace(day=1), day.replace(day=last_day))


def quarter_period(day: date) -> Period:
    first_month = 3 * ((day.month - 1) // 3) + 1
    last_month = first_month + 2
    last_day = calendar.monthrange(day.year, last_month)[1]
    return Period(date(day.year, first_month, 1), date(day.year, last_month, last_day))


def phase_aligned_period(anchor: date, run_date: date, length_days: int) -> Period:
    """N-day period containing *run_date*, phase-aligned to *anchor*.

    Python's ``%`` is Euclidean for a positive modulus, so anchors after
    the run date still yield a start on or before it.
    """
    offset = (run_date - anchor).days % length_days
    start = run_date - timedelta(days=offset)
    return Period(start, start + timedelta(days=length_days - 1))


# ── Public API ───────────────────────────────────────────────────────────────

def resolve_period(rule: RecurrenceRule, anchor_date: date | None, run_date: date) -> Period | None:
    """Return the period containing *run_date* for *rule*, or None.

    *anchor_date* only matters for biweekly and custom rules; when it is
    None those rules fall back to the run date's week start (biweekly) or
    the run date itself (custom).
    """
    kind = rule.type

    if kind == "weekly":
        return week_period(run_date)
    if kind == "monthly":
        return month_period(run_date)
    if kind == "quarterly":
        return quarter_period(run_date)
    if kind == "biweekly":
        anchor = anchor_date or week_start(run_date)
        return phase_aligned_period(anchor, run_date, BIWEEKLY_DAYS)
    if kind == "custom":
        interval = rule.interval_days
        if not isinstance(interval, int) or isinstance(interval, bool) or interval <= 0:
            return None
        return phase_aligned_period(anchor_date or run_date, run_date, interval)
    return None
