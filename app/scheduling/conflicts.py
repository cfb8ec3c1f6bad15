"""Non-overlap checks and free slot suggestions.

The overlap trigger on ``scheduleevent`` compares stored rows only.
``validate_no_overlap`` rejects early with a readable error and also catches
collisions between expanded occurrences of recurring events, which the
trigger cannot see. A recurring booking is expanded up to
``RECURRING_CHECK_HORIZON`` past the last stored booking it could meet.
"""
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from uuid import UUID

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import SchedulingConflict, SchedulingValidationError
from app.models import EventStatus, ExternalBlock, ScheduleEvent
from app.models.external_block import BLOCK_CONFIRMED
from app.models.types import ensure_utc
from app.scheduling.recurrence import expand_occurrences, normalize_rule, resolve_timezone

logger = logging.getLogger(__name__)

Interval = tuple[datetime, datetime]

RECURRING_CHECK_HORIZON = timedelta(days=366)


@dataclass
class WorkingHours:
    """Weekly working window. ``days`` are ISO weekdays (1 = Monday)."""
    days: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    start: time = time(9, 0)
    end: time = time(18, 0)
    timezone: str | None = None


@dataclass(frozen=True)
class Slot:
    start_at: datetime
    end_at: datetime


def validate_interval(start: datetime | None, end: datetime | None) -> Interval:
    """Both bounds present and ``end`` after ``start``. Returns them in UTC."""
    if start is None or end is None:
        raise SchedulingValidationError("Start and end are required")
    start, end = ensure_utc(start), ensure_utc(end)
    if end <= start:
        raise SchedulingValidationError("End must be after start")
    return start, end


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def active_events(
    session: Session,
    start: datetime,
    end: datetime,
    resource_id: str | None = None,
    excluding_event_id: UUID | None = None,
) -> list[ScheduleEvent]:
    """
    Non-cancelled events that may touch ``[start, end)``.

    Single events are filtered exactly. Recurring series are returned when
    they start before ``end``; callers expand them.
    """
    statement = select(ScheduleEvent).where(ScheduleEvent.status != EventStatus.CANCELLED)
    statement = statement.where(
        or_(
            and_(ScheduleEvent.start_at < end, ScheduleEvent.end_at > start),
            and_(ScheduleEvent.recurrence_rule.is_not(None), ScheduleEvent.start_at < end),
        )
    )
    if resource_id is not None:
        statement = statement.where(ScheduleEvent.consultant_id == resource_id)
    if excluding_event_id is not None:
        statement = statement.where(ScheduleEvent.id != excluding_event_id)
    return list(session.exec(statement).all())


def series_intervals(
    rule: str | None,
    event_start: datetime,
    event_end: datetime,
    tz: str | None,
    start: datetime,
    end: datetime,
) -> list[Interval]:
    """Intervals a possibly recurring booking occupies inside ``[start, end)``."""
    intervals = []
    event_start, event_end = ensure_utc(event_start), ensure_utc(event_end)
    if _overlaps(event_start, event_end, start, end):
        intervals.append((event_start, event_end))

    if normalize_rule(rule):
        for occurrence in expand_occurrences(rule, event_start, event_end, start, end, tz):
            interval = (occurrence.start_at, occurrence.end_at)
            if interval not in intervals:
                intervals.append(interval)
    return sorted(intervals)


def event_intervals(event: ScheduleEvent, start: datetime, end: datetime) -> list[Interval]:
    """Intervals an event occupies inside ``[start, end)``."""
    return series_intervals(event.recurrence_rule, event.start_at, event.end_at, event.timezone, start, end)


def _first_collision(ours: list[Interval], theirs: list[Interval]) -> Interval | None:
    """First interval of ``ours`` meeting one of ``theirs``. Both lists sorted."""
    j = 0
    for our_start, our_end in ours:
        while j < len(theirs) and theirs[j][1] <= our_start:
            j += 1
        if j < len(theirs) and theirs[j][0] < our_end:
            return our_start, our_end
    return None


def _bookings_from(
    session: Session,
    resource_id: str,
    start: datetime,
    excluding_event_id: UUID | None = None,
) -> list[ScheduleEvent]:
    """Non-cancelled events still running after ``start``, and every recurring series."""
    statement = (
        select(ScheduleEvent)
        .where(ScheduleEvent.consultant_id == resource_id)
        .where(ScheduleEvent.status != EventStatus.CANCELLED)
        .where(or_(ScheduleEvent.end_at > start, ScheduleEvent.recurrence_rule.is_not(None)))
    )
    if excluding_event_id is not None:
        statement = statement.where(ScheduleEvent.id != excluding_event_id)
    return list(session.exec(statement).all())


def validate_no_overlap(
    session: Session,
    resource_id: str,
    start: datetime,
    end: datetime,
    excluding_event_id: UUID | None = None,
    recurrence_rule: str | None = None,
    timezone: str | None = None,
) -> None:
    """
    Raise SchedulingConflict if the resource is already booked in the interval.

    With ``recurrence_rule`` every occurrence of the new booking is checked,
    up to ``RECURRING_CHECK_HORIZON`` past the latest stored booking it
    could meet. Cancelled events never conflict. Intervals are half-open,
    so an event ending at 10:00 does not collide with one starting at 10:00.
    """
    start, end = validate_interval(start, end)
    if not normalize_rule(recurrence_rule):
        for event in active_events(session, start, end, resource_id, excluding_event_id):
            if event_intervals(event, start, end):
                logger.info(f"Rejected booking for {resource_id}: overlaps event {event.id}")
                raise SchedulingConflict()
        return

    bookings = _bookings_from(session, resource_id, start, excluding_event_id)
    if not bookings:
        return
    latest = max(
        [end]
        + [ensure_utc(event.end_at) for event in bookings]
        + [ensure_utc(event.start_at) for event in bookings if normalize_rule(event.recurrence_rule)]
    )
    window_end = latest + RECURRING_CHECK_HORIZON
    ours = series_intervals(recurrence_rule, start, end, timezone, start, window_end)

    for event in bookings:
        collision = _first_collision(ours, event_intervals(event, start, window_end))
        if collision:
            logger.info(
                f"Rejected recurring booking for {resource_id}: "
                f"occurrence at {collision[0].isoformat()} overlaps event {event.id}"
            )
            raise SchedulingConflict()


def busy_intervals(session: Session, resource_id: str, start: datetime, end: datetime) -> list[Interval]:
    """
    Everything that makes a resource unavailable in ``[start, end)``.

    Includes non-cancelled events (recurrences expanded) and confirmed,
    timed external blocks imported from Google Calendar.
    """
    start, end = ensure_utc(start), ensure_utc(end)
    intervals: list[Interval] = []
    for event in active_events(session, start, end, resource_id):
        intervals.extend(event_intervals(event, start, end))

    statement = (
        select(ExternalBlock)
        .where(ExternalBlock.resource_id == resource_id)
        .where(ExternalBlock.status == BLOCK_CONFIRMED)
        .where(ExternalBlock.all_day == False)  # noqa: E712
        .where(ExternalBlock.start_at < end)
        .where(ExternalBlock.end_at > start)
    )
    for block in session.exec(statement).all():
        intervals.append((ensure_utc(block.start_at), ensure_utc(block.end_at)))

    return sorted(intervals)


def _align(value: datetime, granularity: timedelta) -> datetime:
    """Round ``value`` up to the next multiple of ``granularity``."""
    epoch = datetime(1970, 1, 1, tzinfo=UTC)
    remainder = (value - epoch) % granularity
    return value if not remainder else value + (granularity - remainder)


def _within_working_hours(start: datetime, end: datetime, hours: WorkingHours) -> bool:
    zone = resolve_timezone(hours.timezone)
    local_start, local_end = start.astimezone(zone), end.astimezone(zone)
    if local_start.isoweekday() not in hours.days:
        return False
    if local_end.date() != local_start.date():
        return False
    return local_start.time() >= hours.start and local_end.time() <= hours.end


def suggest_slots(
    session: Session,
    resource_id: str,
    duration_minutes: int,
    search_start: datetime,
    search_end: datetime,
    working_hours: WorkingHours | None = None,
    buffer_minutes: int = 0,
    limit: int = 5,
    granularity_minutes: int = 15,
) -> list[Slot]:
    """
    Suggest free slots for a resource.

    Candidate starts walk ``[search_start, search_end)`` in
    ``granularity_minutes`` steps. A candidate is kept when the whole slot
    lies inside the working hours and ``[start - buffer, start + duration)``
    is clear of every busy interval.

    Returns:
        Up to ``limit`` slots in chronological order.
    """
    if duration_minutes <= 0:
        raise SchedulingValidationError("Duration must be positive")
    if buffer_minutes < 0 or granularity_minutes <= 0 or limit <= 0:
        raise SchedulingValidationError("Buffer, granularity and limit must be positive")
    search_start, search_end = validate_interval(search_start, search_end)
    working_hours = working_hours or WorkingHours(timezone=settings.default_timezone)

    duration = timedelta(minutes=duration_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    step = timedelta(minutes=granularity_minutes)
    busy = busy_intervals(session, resource_id, search_start - buffer, search_end + duration)

    slots: list[Slot] = []
    candidate = _align(search_start, step)
    while candidate < search_end and len(slots) < limit:
        slot_end = candidate + duration
        guarded_start = candidate - buffer
        if _within_working_hours(candidate, slot_end, working_hours) and not any(
            _overlaps(guarded_start, slot_end, busy_start, busy_end) for busy_start, busy_end in busy
        ):
            slots.append(Slot(start_at=candidate, end_at=slot_end))
        candidate += step

    return slots
