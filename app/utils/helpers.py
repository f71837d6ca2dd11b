"""Shared utility functions used by blueprints and services.

parse_date:          returns None on bad input
parse_date_input:    raises ValueError on bad input
app_timezone / local_today / utcnow: clock helpers honouring APP_TIMEZONE
"""
import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


def parse_date(value):
    """Parse a date string (ISO or MM/DD/YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - MM/DD/YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    for parser in (date.fromisoformat, lambda v: datetime.fromisoformat(v).date()):
        try:
            return parser(str(value))
        except (ValueError, TypeError):
            continue
    try:
        return datetime.strptime(str(value), "%m/%d/%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Same as parse_date() but raises instead of returning None, so callers
    can tell "absent" (None) from "malformed" (ValueError → 400/422).
    """
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError(f"Invalid date format: {value!r}. Use YYYY-MM-DD.")
    return parsed


# ── Clock helpers ────────────────────────────────────────────────────────────

def utcnow():
    """Current aware UTC datetime (single seam for tests to patch)."""
    return datetime.now(timezone.utc)


def app_timezone(name=None):
    """Return the configured application ZoneInfo.

    Falls back to UTC (with a warning) when the configured name is unknown.
    """
    if name is None:
        name = current_app.config.get("APP_TIMEZONE", DEFAULT_TIMEZONE) if has_app_context() else DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown APP_TIMEZONE %r, falling back to UTC", name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_today(tz_name=None):
    """Calendar date as observed in the application time zone, not UTC."""
    return utcnow().astimezone(app_timezone(tz_name)).date()
