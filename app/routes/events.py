"""Event routes for the scheduling API."""
import logging
from datetime import datetime, time
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from sqlmodel import Field, Session, SQLModel

from app.calendar.export import ExportAction, export_event, run_export
from app.core.database import get_session
from app.core.errors import SchedulingValidationError
from app.models import CalendarEntry, ScheduleEvent
from app.models.change_request import ChangeRequestCreate, ChangeRequestRead
from app.models.event import AttendeeRead, ScheduleEventCreate, ScheduleEventRead, ScheduleEventUpdate
from app.scheduling import service
from app.scheduling.conflicts import WorkingHours, suggest_slots

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


class ConfirmRequest(SQLModel):
    actor_id: str
    decision: str
    clinic_id: str | None = None


class SuggestSlotsRequest(SQLModel):
    resource_id: str
    duration_minutes: int
    search_start: datetime
    search_end: datetime
    buffer_minutes: int = 15
    working_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    work_start: time = time(9, 0)
    work_end: time = time(18, 0)
    timezone: str | None = None
    limit: int = 5


class SlotRead(SQLModel):
    start_at: datetime
    end_at: datetime


def to_read(event: ScheduleEvent) -> ScheduleEventRead:
    """Serialize an event with its attendee links."""
    return ScheduleEventRead(
        **event.model_dump(),
        attendees=[AttendeeRead(**attendee.model_dump()) for attendee in event.attendees],
    )


@router.post("", response_model=ScheduleEventRead, status_code=201)
def create_event(
    payload: ScheduleEventCreate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    Create an event and its attendee links.

    Returns 409 when the consultant is already booked and 422 when the
    title, interval or attendees are missing. The event is mirrored to
    Google Calendar after the response.
    """
    event = service.create_event(session, payload)
    background_tasks.add_task(run_export, event.id, ExportAction.CREATE)
    return to_read(event)


@router.get("", response_model=list[CalendarEntry])
async def list_events(
    start: datetime,
    end: datetime,
    resource_id: str | None = None,
    clinic_id: str | None = None,
    include_external: bool = True,
    session: Session = Depends(get_session),
):
    """
    Agenda for a resource or a clinic within ``[start, end)``.

    Recurring events are expanded into occurrences; imported Google
    events are included as external entries.
    """
    return service.list_events(
        session,
        start,
        end,
        resource_id=resource_id,
        clinic_id=clinic_id,
        include_external=include_external,
    )


@router.get("/upcoming", response_model=list[CalendarEntry])
async def upcoming_events(
    resource_id: str,
    minutes: int = Query(default=60, gt=0),
    session: Session = Depends(get_session),
):
    """Occurrences starting within the next ``minutes`` (reminder polling)."""
    return service.events_starting_within(session, resource_id, minutes)


@router.post("/suggest-slots", response_model=list[SlotRead])
async def suggest_free_slots(payload: SuggestSlotsRequest, session: Session = Depends(get_session)):
    """Free slots for a resource, honoring working hours and a buffer."""
    if not payload.working_days or any(day < 1 or day > 7 for day in payload.working_days):
        raise SchedulingValidationError("Working days must be ISO weekdays (1-7)")
    if payload.work_end <= payload.work_start:
        raise SchedulingValidationError("Working hours must end after they start")

    hours = WorkingHours(
        days=payload.working_days,
        start=payload.work_start,
        end=payload.work_end,
        timezone=payload.timezone,
    )
    slots = suggest_slots(
        session,
        payload.resource_id,
        payload.duration_minutes,
        payload.search_start,
        payload.search_end,
        working_hours=hours,
        buffer_minutes=payload.buffer_minutes,
        limit=payload.limit,
    )
    return [SlotRead(start_at=slot.start_at, end_at=slot.end_at) for slot in slots]


@router.get("/{event_id}", response_model=ScheduleEventRead)
async def get_event(event_id: UUID, session: Session = Depends(get_session)):
    return to_read(service.get_event(session, event_id))


@router.patch("/{event_id}", response_model=ScheduleEventRead)
def update_event(
    event_id: UUID,
    payload: ScheduleEventUpdate,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    Update an event.

    Moving an event with a pending reschedule request marks it
    ``rescheduled`` unless ``force_status`` says otherwise.
    """
    event = service.update_event(session, event_id, payload)
    background_tasks.add_task(run_export, event.id, ExportAction.UPDATE)
    return to_read(event)


@router.post("/{event_id}/cancel", response_model=ScheduleEventRead)
def cancel_event(
    event_id: UUID,
    background_tasks: BackgroundTasks,
    cancelled_by: str | None = None,
    session: Session = Depends(get_session),
):
    """Cancel an event. Cancelled events stay in history."""
    event = service.cancel_event(session, event_id, cancelled_by)
    background_tasks.add_task(run_export, event.id, ExportAction.CANCEL)
    return to_read(event)


@router.delete("/{event_id}", status_code=204)
def delete_event(event_id: UUID, session: Session = Depends(get_session)):
    """
    Delete an event created by mistake.

    The mirrored Google event is removed first, while its id is still
    known.
    """
    service.get_event(session, event_id)
    export_event(session, event_id, ExportAction.CANCEL)
    service.delete_event(session, event_id)
    return Response(status_code=204)


@router.post("/{event_id}/confirm", response_model=ScheduleEventRead)
async def confirm_event(event_id: UUID, payload: ConfirmRequest, session: Session = Depends(get_session)):
    """Record the consultant's answer, or a clinic's when ``clinic_id`` is set."""
    event = service.confirm_attendance(
        session, event_id, payload.actor_id, payload.decision, clinic_id=payload.clinic_id
    )
    return to_read(event)


@router.post("/{event_id}/change-requests", response_model=ChangeRequestRead, status_code=201)
async def create_change_request(
    event_id: UUID,
    payload: ChangeRequestCreate,
    session: Session = Depends(get_session),
):
    """Open a reschedule request on behalf of a clinic."""
    request = service.request_reschedule(
        session,
        event_id,
        payload.clinic_id,
        payload.requested_by,
        payload.reason,
        suggested_start=payload.suggested_start_at,
        suggested_end=payload.suggested_end_at,
    )
    return ChangeRequestRead(**request.model_dump())
