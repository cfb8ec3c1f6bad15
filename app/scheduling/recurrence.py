"""Recurrence rules for schedule events.

A recurring event is stored once with an RRULE body (``FREQ=WEEKLY;BYDAY=MO``,
no ``RRULE:`` prefix). Occurrences are expanded on read, always inside a
finite window, with ``dateutil.rrule`` on the event's local wall clock so a
weekly 09:00 meeting stays at 09:00 across DST changes.
"""
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rrulestr

from app.core.config import settings
from app.core.errors import SchedulingValidationError
from app.models.types import ensure_utc

logger = logging.getLogger(__name__)

# Indexed by date.weekday()
WEEKDAY_TOKENS = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
WEEKDAY_NAMES = {
    "MO": "Monday",
    "TU": "Tuesday",
    "WE": "Wednesday",
    "TH": "Thursday",
    "FR": "Friday",
    "SA": "Saturday",
    "SU": "Sunday",
}
WORKWEEK = ["MO", "TU", "WE", "TH", "FR"]
SUPPORTED_FREQUENCIES = {"DAILY", "WEEKLY", "MONTHLY", "YEARLY"}
MAX_OCCURRENCES = 5000

_DATE_ONLY_UNTIL = re.compile(r"UNTIL=(\d{8})(?=;|$)")
_FLOATING_UNTIL = re.compile(r"UNTIL=(\d{8}T\d{6})(?=;|$)")


class RecurrenceOption(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Occurrence:
    """One concrete instance of a recurring event.

    ``key`` is the UTC start stamp, stable across expansions of any window.
    """
    key: str
    start_at: datetime
    end_at: datetime


def resolve_timezone(name: str | None) -> ZoneInfo:
    """ZoneInfo for ``name`` (default timezone when empty)."""
    try:
        return ZoneInfo(name or settings.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingValidationError(f"Unknown timezone: {name}") from e


def normalize_rule(rule: str | None) -> str:
    """Strip whitespace and an ``RRULE:`` prefix, upper-case the rest."""
    trimmed = (rule or "").strip()
    if trimmed.upper().startswith("RRULE:"):
        trimmed = trimmed[len("RRULE:"):]
    return trimmed.strip().upper()


def rule_parts(rule: str | None) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in normalize_rule(rule).split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        if key.strip() and value.strip():
            parts[key.strip()] = value.strip()
    return parts


def _byday(parts: dict[str, str]) -> list[str]:
    # "1MO" / "-1FR" style prefixes are dropped, order follows the week
    tokens = {token.strip()[-2:] for token in parts.get("BYDAY", "").split(",")}
    return [token for token in WEEKDAY_TOKENS if token in tokens]


def build_rule(option: RecurrenceOption | str, anchor_start: datetime, tz: str | None = None) -> str | None:
    """
    Canonical rule for a preset, anchored on the first occurrence.

    The anchor is read on the event's local wall clock: an event starting
    Monday 23:30 in São Paulo recurs on Mondays even though it is Tuesday
    in UTC.
    """
    try:
        option = RecurrenceOption(option)
    except ValueError as e:
        raise SchedulingValidationError(f"Unknown recurrence option: {option}") from e

    local = ensure_utc(anchor_start).astimezone(resolve_timezone(tz))
    if option == RecurrenceOption.NONE:
        return None
    if option == RecurrenceOption.DAILY:
        return "FREQ=DAILY"
    if option == RecurrenceOption.WEEKDAYS:
        return f"FREQ=WEEKLY;BYDAY={','.join(WORKWEEK)}"
    if option == RecurrenceOption.WEEKLY:
        return f"FREQ=WEEKLY;BYDAY={WEEKDAY_TOKENS[local.weekday()]}"
    if option == RecurrenceOption.MONTHLY:
        return f"FREQ=MONTHLY;BYMONTHDAY={local.day}"
    if option == RecurrenceOption.YEARLY:
        return f"FREQ=YEARLY;BYMONTH={local.month};BYMONTHDAY={local.day}"
    raise SchedulingValidationError("Custom recurrences must be given as a rule")


def resolve_option(rule: str | None) -> RecurrenceOption:
    """
    Preset matching a stored rule, for editing UIs.

    Rules carrying INTERVAL, COUNT or UNTIL, or a weekly rule on several
    days other than the workweek, resolve to ``CUSTOM`` so that re-saving a
    preset never silently drops them.
    """
    if not normalize_rule(rule):
        return RecurrenceOption.NONE

    parts = rule_parts(rule)
    if parts.get("INTERVAL", "1") != "1" or "COUNT" in parts or "UNTIL" in parts:
        return RecurrenceOption.CUSTOM

    frequency = parts.get("FREQ")
    if frequency == "DAILY":
        return RecurrenceOption.DAILY
    if frequency == "MONTHLY":
        return RecurrenceOption.MONTHLY
    if frequency == "YEARLY":
        return RecurrenceOption.YEARLY
    if frequency == "WEEKLY":
        days = _byday(parts)
        if days == WORKWEEK:
            return RecurrenceOption.WEEKDAYS
        if len(days) <= 1:
            return RecurrenceOption.WEEKLY
    return RecurrenceOption.CUSTOM


def _widen_until(normalized: str) -> str:
    # Date-only UNTIL includes the whole day; floating UNTIL is taken as UTC
    normalized = _DATE_ONLY_UNTIL.sub(r"UNTIL=\1T235959Z", normalized)
    return _FLOATING_UNTIL.sub(r"UNTIL=\1Z", normalized)


def _compile(normalized: str, dtstart: datetime):
    return rrulestr(f"RRULE:{_widen_until(normalized)}", dtstart=dtstart)


def validate_rule(rule: str | None) -> str | None:
    """
    Normalize and validate a rule.

    Returns:
        The normalized rule body, or None for "does not repeat".

    Raises:
        SchedulingValidationError: The rule cannot be parsed, or repeats
            more often than daily.
    """
    normalized = normalize_rule(rule)
    if not normalized:
        return None

    frequency = rule_parts(normalized).get("FREQ")
    if frequency not in SUPPORTED_FREQUENCIES:
        raise SchedulingValidationError(
            f"Recurrence frequency must be one of {', '.join(sorted(SUPPORTED_FREQUENCIES))}"
        )
    try:
        _compile(normalized, datetime(2000, 1, 1, tzinfo=UTC))
    except (ValueError, TypeError, KeyError) as e:
        raise SchedulingValidationError(f"Invalid recurrence rule: {normalized}") from e
    return normalized


def to_google_recurrence(rule: str | None) -> list[str] | None:
    normalized = normalize_rule(rule)
    return [f"RRULE:{normalized}"] if normalized else None


def describe_rule(rule: str | None, anchor_start: datetime | None = None, tz: str | None = None) -> str:
    """Human label for a rule."""
    option = resolve_option(rule)
    parts = rule_parts(rule)
    local = ensure_utc(anchor_start or datetime.now(UTC)).astimezone(resolve_timezone(tz))

    if option == RecurrenceOption.NONE:
        return "Does not repeat"
    if option == RecurrenceOption.DAILY:
        return "Every day"
    if option == RecurrenceOption.WEEKDAYS:
        return "Every weekday (Monday to Friday)"
    if option == RecurrenceOption.WEEKLY:
        days = _byday(parts) or [WEEKDAY_TOKENS[local.weekday()]]
        return f"Weekly on {WEEKDAY_NAMES[days[0]]}"
    if option == RecurrenceOption.MONTHLY:
        return f"Monthly on day {parts.get('BYMONTHDAY', local.day)}"
    if option == RecurrenceOption.YEARLY:
        return f"Annually on {local.strftime('%B')} {local.day}"
    return "Custom recurrence"


def expand_occurrences(
    rule: str | None,
    start: datetime,
    end: datetime,
    range_start: datetime,
    range_end: datetime,
    tz: str | None = None,
    max_occurrences: int = MAX_OCCURRENCES,
) -> list[Occurrence]:
    """
    Expand a recurring event inside ``[range_start, range_end)``.

    Args:
        rule: RRULE body, with or without the ``RRULE:`` prefix.
        start: Start of the first occurrence.
        end: End of the first occurrence. Every occurrence keeps this
            duration.
        range_start: Window start, inclusive.
        range_end: Window end, exclusive.
        tz: IANA timezone whose wall clock the rule follows.
        max_occurrences: Hard cap on the number of occurrences returned.

    Returns:
        Occurrences whose interval intersects the window, in order. Empty
        for a non-recurring rule, an empty window or an inverted interval.
    """
    normalized = normalize_rule(rule)
    start, end = ensure_utc(start), ensure_utc(end)
    range_start, range_end = ensure_utc(range_start), ensure_utc(range_end)
    if not normalized or end <= start or range_end <= range_start:
        return []

    duration = end - start
    local_start = start.astimezone(resolve_timezone(tz))
    try:
        recurrence = _compile(normalized, local_start)
    except (ValueError, TypeError, KeyError):
        logger.warning(f"Skipping unparseable recurrence rule: {normalized}")
        return []

    occurrences: list[Occurrence] = []
    for candidate in recurrence.xafter(range_start - duration, inc=False):
        occurrence_start = candidate.astimezone(UTC)
        if occurrence_start >= range_end:
            break
        if len(occurrences) >= max_occurrences:
            logger.warning(f"Recurrence {normalized} truncated at {max_occurrences} occurrences")
            break
        occurrences.append(
            Occurrence(
                key=occurrence_start.strftime("%Y%m%dT%H%M%SZ"),
                start_at=occurrence_start,
                end_at=occurrence_start + duration,
            )
        )
    return occurrences
