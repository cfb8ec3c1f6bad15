"""Scheduling operations on events, attendees and change requests.

Every operation takes explicit resource/clinic identifiers and commits its
own unit of work. Overlap violations raised by the storage trigger come back
as ``SchedulingConflict``, the same error the early check raises.
"""
import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.database import begin_immediate, is_overlap_violation
from app.core.errors import (
    InvalidTransition,
    NotFoundError,
    SchedulingConflict,
    SchedulingError,
    SchedulingValidationError,
)
from app.models import (
    Attendee,
    CalendarEntry,
    ChangeRequest,
    ChangeRequestStatus,
    ConfirmStatus,
    EventStatus,
    ExternalBlock,
    ScheduleEvent,
)
from app.models.event import ScheduleEventCreate, ScheduleEventUpdate
from app.models.external_block import BLOCK_CONFIRMED
from app.models.types import ensure_utc
from app.scheduling import workflow
from app.scheduling.conflicts import active_events, validate_interval, validate_no_overlap
from app.scheduling.recurrence import expand_occurrences, normalize_rule, resolve_timezone, validate_rule

logger = logging.getLogger(__name__)


def _commit(session: Session) -> None:
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        if is_overlap_violation(e):
            raise SchedulingConflict() from e
        raise


def _clean_clinic_ids(clinic_ids: list[str] | None) -> list[str]:
    cleaned = []
    for clinic_id in clinic_ids or []:
        clinic_id = (clinic_id or "").strip()
        if clinic_id and clinic_id not in cleaned:
            cleaned.append(clinic_id)
    return cleaned


def get_event(session: Session, event_id: UUID) -> ScheduleEvent:
    event = session.get(ScheduleEvent, event_id)
    if not event:
        raise NotFoundError(f"Event {event_id} not found")
    return event


def _reevaluate(event: ScheduleEvent) -> None:
    """Recompute the aggregate status from confirmation answers."""
    event.status = workflow.aggregate_status(
        event.consultant_confirm_status,
        [attendee.confirm_status for attendee in event.attendees],
    )


def create_event(session: Session, data: ScheduleEventCreate, clinic_ids: list[str] | None = None) -> ScheduleEvent:
    """
    Create an event with its attendee links in one transaction.

    Raises:
        SchedulingValidationError: Missing title, interval or attendees, or
            an invalid timezone/recurrence rule.
        SchedulingConflict: The consultant is already booked.
    """
    title = (data.title or "").strip()
    if not title:
        raise SchedulingValidationError("Title is required")
    if not (data.consultant_id or "").strip():
        raise SchedulingValidationError("Consultant is required")
    start, end = validate_interval(data.start_at, data.end_at)
    clinics = _clean_clinic_ids(clinic_ids if clinic_ids is not None else data.clinic_ids)
    if not clinics:
        raise SchedulingValidationError("At least one clinic must attend")
    timezone = data.timezone or settings.default_timezone
    resolve_timezone(timezone)
    rule = validate_rule(data.recurrence_rule)

    begin_immediate(session)
    try:
        validate_no_overlap(session, data.consultant_id, start, end, recurrence_rule=rule, timezone=timezone)
    except SchedulingError:
        session.rollback()
        raise

    event = ScheduleEvent(
        consultant_id=data.consultant_id,
        title=title,
        description=data.description,
        start_at=start,
        end_at=end,
        timezone=timezone,
        location=data.location,
        meeting_url=data.meeting_url,
        recurrence_rule=rule,
        status=EventStatus.PENDING_CONFIRMATION,
    )
    event.attendees = [Attendee(clinic_id=clinic_id) for clinic_id in clinics]
    session.add(event)
    _commit(session)
    session.refresh(event)

    logger.info(f"Created event {event.id} for {event.consultant_id} at {start.isoformat()}")
    return event


def _sync_attendees(event: ScheduleEvent, clinic_ids: list[str]) -> bool:
    """Match the attendee links to ``clinic_ids``, keeping existing answers."""
    current = {attendee.clinic_id: attendee for attendee in event.attendees}
    if set(current) == set(clinic_ids):
        return False
    event.attendees = [current.get(clinic_id) or Attendee(clinic_id=clinic_id) for clinic_id in clinic_ids]
    return True


def update_event(
    session: Session,
    event_id: UUID,
    updates: ScheduleEventUpdate,
    clinic_ids: list[str] | None = None,
    force_status: str | None = None,
) -> ScheduleEvent:
    """
    Apply a partial update.

    A new interval, recurrence rule or series timezone is checked for
    overlaps (excluding the event itself). Without ``force_status``, moving
    an event while a reschedule is requested promotes it to ``rescheduled``.
    """
    event = get_event(session, event_id)
    if event.status == EventStatus.CANCELLED:
        raise InvalidTransition("Cancelled events cannot be edited")

    fields = updates.model_dump(exclude_unset=True)
    payload_clinics = fields.pop("clinic_ids", None)
    payload_status = fields.pop("force_status", None)
    clinic_ids = clinic_ids if clinic_ids is not None else payload_clinics
    force_status = force_status or payload_status
    if force_status is not None:
        try:
            force_status = EventStatus(force_status)
        except ValueError as e:
            raise SchedulingValidationError(f"Unknown status: {force_status}") from e

    if "title" in fields:
        fields["title"] = (fields["title"] or "").strip()
        if not fields["title"]:
            raise SchedulingValidationError("Title is required")
    if "timezone" in fields:
        fields["timezone"] = fields["timezone"] or settings.default_timezone
        resolve_timezone(fields["timezone"])
    if "recurrence_rule" in fields:
        fields["recurrence_rule"] = validate_rule(fields["recurrence_rule"])

    old_start, old_end = ensure_utc(event.start_at), ensure_utc(event.end_at)
    start, end = validate_interval(
        fields.pop("start_at", None) or old_start,
        fields.pop("end_at", None) or old_end,
    )
    interval_changed = (start, end) != (old_start, old_end)
    status = workflow.status_after_update(event.status, interval_changed, force_status)

    clinics = _clean_clinic_ids(clinic_ids) if clinic_ids is not None else None
    if clinics is not None and not clinics:
        raise SchedulingValidationError("At least one clinic must attend")

    rule = fields.get("recurrence_rule", event.recurrence_rule)
    timezone = fields.get("timezone", event.timezone)
    series_changed = normalize_rule(rule) != normalize_rule(event.recurrence_rule) or (
        bool(normalize_rule(rule)) and timezone != event.timezone
    )
    if (interval_changed or series_changed) and status != EventStatus.CANCELLED:
        begin_immediate(session)
        try:
            validate_no_overlap(
                session,
                event.consultant_id,
                start,
                end,
                excluding_event_id=event.id,
                recurrence_rule=rule,
                timezone=timezone,
            )
        except SchedulingError:
            session.rollback()
            raise

    for key, value in fields.items():
        setattr(event, key, value)
    event.start_at, event.end_at = start, end
    event.status = status

    if clinics is not None and _sync_attendees(event, clinics):
        if force_status is None and event.status in workflow.REEVALUATED_STATUSES:
            _reevaluate(event)

    event.updated_at = datetime.now(UTC)
    session.add(event)
    _commit(session)
    session.refresh(event)

    logger.info(f"Updated event {event.id} (status {event.status})")
    return event


def _close_open_requests(session: Session, event: ScheduleEvent, status: str, handled_by: str | None = None) -> None:
    for request in event.change_requests:
        if request.status == ChangeRequestStatus.OPEN:
            request.status = status
            request.handled_by = handled_by
            request.handled_at = datetime.now(UTC)
            session.add(request)


def cancel_event(session: Session, event_id: UUID, cancelled_by: str | None = None) -> ScheduleEvent:
    """Cancel an event. Cancelling twice is a no-op."""
    event = get_event(session, event_id)
    if event.status == EventStatus.CANCELLED:
        return event

    event.status = EventStatus.CANCELLED
    event.updated_at = datetime.now(UTC)
    _close_open_requests(session, event, ChangeRequestStatus.CANCELLED, cancelled_by)
    session.add(event)
    _commit(session)
    session.refresh(event)

    logger.info(f"Cancelled event {event.id}")
    return event


def delete_event(session: Session, event_id: UUID) -> None:
    """Remove an event created by mistake, with its links and requests."""
    event = get_event(session, event_id)
    session.delete(event)
    session.commit()
    logger.info(f"Deleted event {event_id}")


def request_reschedule(
    session: Session,
    event_id: UUID,
    clinic_id: str,
    requested_by: str,
    reason: str,
    suggested_start: datetime | None = None,
    suggested_end: datetime | None = None,
) -> ChangeRequest:
    """Open a change request and flag the event ``reschedule_requested``."""
    event = get_event(session, event_id)
    if event.status == EventStatus.CANCELLED:
        raise InvalidTransition("Cancelled events cannot be rescheduled")
    if clinic_id not in {attendee.clinic_id for attendee in event.attendees}:
        raise SchedulingValidationError(f"Clinic {clinic_id} is not invited to this event")
    reason = (reason or "").strip()
    if not reason:
        raise SchedulingValidationError("A reason is required")
    if not (requested_by or "").strip():
        raise SchedulingValidationError("Requester is required")
    if (suggested_start is None) != (suggested_end is None):
        raise SchedulingValidationError("Suggest both a start and an end, or neither")
    if suggested_start is not None:
        suggested_start, suggested_end = validate_interval(suggested_start, suggested_end)

    workflow.ensure_transition(event.status, EventStatus.RESCHEDULE_REQUESTED)
    request = ChangeRequest(
        event_id=event.id,
        clinic_id=clinic_id,
        requested_by=requested_by,
        reason=reason,
        suggested_start_at=suggested_start,
        suggested_end_at=suggested_end,
    )
    event.status = EventStatus.RESCHEDULE_REQUESTED
    event.updated_at = datetime.now(UTC)
    session.add(request)
    session.add(event)
    _commit(session)
    session.refresh(request)

    logger.info(f"Clinic {clinic_id} requested reschedule of event {event.id}")
    return request


def _has_open_requests(session: Session, event_id: UUID) -> bool:
    statement = (
        select(ChangeRequest)
        .where(ChangeRequest.event_id == event_id)
        .where(ChangeRequest.status == ChangeRequestStatus.OPEN)
    )
    return session.exec(statement).first() is not None


def resolve_change_request(
    session: Session,
    request_id: UUID,
    outcome: str,
    handled_by: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ChangeRequest:
    """
    Accept, reject or withdraw an open change request.

    Accepting moves the event to ``start``/``end`` (defaulting to the
    suggested interval). Once no open request remains, the event status is
    recomputed from the confirmation answers.
    """
    request = session.get(ChangeRequest, request_id)
    if not request:
        raise NotFoundError(f"Change request {request_id} not found")
    if request.status != ChangeRequestStatus.OPEN:
        raise InvalidTransition(f"Change request is already {request.status}")
    try:
        outcome = ChangeRequestStatus(outcome)
    except ValueError as e:
        raise SchedulingValidationError(f"Unknown outcome: {outcome}") from e
    if outcome == ChangeRequestStatus.OPEN:
        raise SchedulingValidationError("A change request cannot be resolved as open")

    event = get_event(session, request.event_id)
    request.status = outcome
    request.handled_by = handled_by
    request.handled_at = datetime.now(UTC)
    session.add(request)

    new_start = start or request.suggested_start_at
    new_end = end or request.suggested_end_at
    if outcome == ChangeRequestStatus.ACCEPTED and new_start and new_end:
        try:
            update_event(session, event.id, ScheduleEventUpdate(start_at=new_start, end_at=new_end))
        except SchedulingError:
            session.rollback()
            raise
    else:
        _commit(session)

    session.refresh(event)
    if event.status != EventStatus.CANCELLED and not _has_open_requests(session, event.id):
        _reevaluate(event)
        event.updated_at = datetime.now(UTC)
        session.add(event)
        _commit(session)

    session.refresh(request)
    logger.info(f"Change request {request.id} {outcome} by {handled_by}")
    return request


def confirm_attendance(
    session: Session,
    event_id: UUID,
    actor_id: str,
    decision: str,
    clinic_id: str | None = None,
) -> ScheduleEvent:
    """
    Record a confirmation answer.

    With ``clinic_id`` the answer is the clinic's, otherwise the
    consultant's. The aggregate status is recomputed unless a reschedule
    is pending.
    """
    try:
        decision = ConfirmStatus(decision)
    except ValueError as e:
        raise SchedulingValidationError(f"Unknown decision: {decision}") from e
    if decision == ConfirmStatus.PENDING:
        raise SchedulingValidationError("Decision must be confirmed or declined")

    event = get_event(session, event_id)
    if event.status == EventStatus.CANCELLED:
        raise InvalidTransition("Cancelled events cannot be confirmed")

    now = datetime.now(UTC)
    if clinic_id:
        attendee = next((a for a in event.attendees if a.clinic_id == clinic_id), None)
        if attendee is None:
            raise NotFoundError(f"Clinic {clinic_id} is not invited to this event")
        attendee.confirm_status = decision
        attendee.confirmed_by = actor_id
        attendee.confirmed_at = now
        session.add(attendee)
    else:
        event.consultant_confirm_status = decision
        event.consultant_confirmed_by = actor_id
        event.consultant_confirmed_at = now

    if event.status in workflow.REEVALUATED_STATUSES:
        _reevaluate(event)
    event.updated_at = now
    session.add(event)
    _commit(session)
    session.refresh(event)

    logger.info(f"{actor_id} {decision} event {event.id}")
    return event


def _entry_for(event: ScheduleEvent, key: str, start: datetime, end: datetime, clinic_id: str | None) -> CalendarEntry:
    confirm_status = None
    if clinic_id:
        attendee = next((a for a in event.attendees if a.clinic_id == clinic_id), None)
        confirm_status = attendee.confirm_status if attendee else None
    return CalendarEntry(
        key=key,
        event_id=event.id,
        consultant_id=event.consultant_id,
        title=event.title,
        start_at=start,
        end_at=end,
        status=event.status,
        recurrence_rule=event.recurrence_rule,
        location=event.location,
        meeting_url=event.meeting_url,
        confirm_status=confirm_status,
    )


def list_events(
    session: Session,
    range_start: datetime,
    range_end: datetime,
    resource_id: str | None = None,
    clinic_id: str | None = None,
    include_external: bool = True,
) -> list[CalendarEntry]:
    """
    Agenda entries intersecting ``[range_start, range_end)``.

    Recurring events are expanded into one entry per occurrence, keyed
    ``<event id>:<occurrence key>``. External blocks are included for a
    resource or clinic agenda and flagged ``is_external``.
    """
    range_start, range_end = validate_interval(range_start, range_end)
    entries: list[CalendarEntry] = []

    for event in active_events(session, range_start, range_end, resource_id):
        if clinic_id and clinic_id not in {a.clinic_id for a in event.attendees}:
            continue
        if normalize_rule(event.recurrence_rule):
            for occurrence in expand_occurrences(
                event.recurrence_rule, event.start_at, event.end_at, range_start, range_end, event.timezone
            ):
                entries.append(
                    _entry_for(event, f"{event.id}:{occurrence.key}", occurrence.start_at, occurrence.end_at, clinic_id)
                )
        else:
            entries.append(
                _entry_for(event, str(event.id), ensure_utc(event.start_at), ensure_utc(event.end_at), clinic_id)
            )

    if include_external and (resource_id or clinic_id):
        statement = (
            select(ExternalBlock)
            .where(ExternalBlock.status == BLOCK_CONFIRMED)
            .where(ExternalBlock.start_at < range_end)
            .where(ExternalBlock.end_at > range_start)
        )
        if resource_id:
            statement = statement.where(ExternalBlock.resource_id == resource_id)
        if clinic_id:
            statement = statement.where(ExternalBlock.clinic_id == clinic_id)
        for block in session.exec(statement).all():
            entries.append(
                CalendarEntry(
                    key=f"external:{block.id}",
                    external_block_id=block.id,
                    consultant_id=block.resource_id,
                    title=block.summary or "Busy",
                    start_at=ensure_utc(block.start_at),
                    end_at=ensure_utc(block.end_at),
                    all_day=block.all_day,
                    status=block.status,
                    is_external=True,
                    location=block.location,
                    meeting_url=block.meeting_url,
                )
            )

    entries.sort(key=lambda entry: (entry.start_at, entry.key))
    return entries


def list_change_requests(
    session: Session,
    status: str | None = ChangeRequestStatus.OPEN,
    event_id: UUID | None = None,
    clinic_id: str | None = None,
) -> list[ChangeRequest]:
    """Change requests, newest first. ``status=None`` lists every status."""
    statement = select(ChangeRequest).order_by(ChangeRequest.created_at.desc())
    if status:
        statement = statement.where(ChangeRequest.status == status)
    if event_id:
        statement = statement.where(ChangeRequest.event_id == event_id)
    if clinic_id:
        statement = statement.where(ChangeRequest.clinic_id == clinic_id)
    return list(session.exec(statement).all())


def events_starting_within(
    session: Session,
    resource_id: str,
    minutes: int,
    now: datetime | None = None,
) -> list[CalendarEntry]:
    """Occurrences for a resource starting in the next ``minutes``, for reminders."""
    if minutes <= 0:
        raise SchedulingValidationError("Minutes must be positive")
    now = ensure_utc(now or datetime.now(UTC))
    horizon = now + timedelta(minutes=minutes)
    entries = list_events(session, now, horizon, resource_id=resource_id, include_external=False)
    return [entry for entry in entries if now <= entry.start_at < horizon]
