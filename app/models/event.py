"""Schedule event model, the internal appointment aggregate.

This module defines the ScheduleEvent model, its status vocabulary and the
request/response schemas used by the scheduling API. A recurring event is
stored once; its occurrences are expanded on read by
``app.scheduling.recurrence``.

The ``scheduleevent`` table carries two triggers that abort any INSERT or
UPDATE producing an overlap between non-cancelled events of the same
consultant. They are the source of truth for the non-overlap rule; the
check in ``app.scheduling.conflicts`` only rejects early.
"""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DDL
from sqlalchemy import event as sa_event
from sqlmodel import Field, Relationship, SQLModel

from app.core.database import OVERLAP_CONSTRAINT
from app.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.attendee import Attendee
    from app.models.change_request import ChangeRequest


class EventStatus(StrEnum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class ConfirmStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class ScheduleEvent(SQLModel, table=True):
    """An appointment owned by one consultant and attended by clinics.

    Attributes:
        id: Unique identifier (UUID).
        consultant_id: Resource that owns the event.
        title: Event title.
        description: Free text shown to attendees.
        start_at: Start of the (first) occurrence, UTC.
        end_at: End of the (first) occurrence, UTC, exclusive.
        timezone: IANA timezone the event was scheduled in. Recurrences
            expand on this zone's wall clock.
        location: Physical location.
        meeting_url: Video call link.
        recurrence_rule: RRULE body (without the ``RRULE:`` prefix), or None.
        status: Lifecycle status, one of ``EventStatus``.
        consultant_confirm_status: The consultant's own confirmation.
        google_event_id: Id of the mirrored Google event, once exported.
        google_etag: Etag of the mirrored Google event.
        google_calendar_id: Calendar the event was mirrored to.
        external_origin: "APP" once mirrored outward by this system.
        attendees: Clinic links with their confirmation state.
        change_requests: Reschedule proposals raised by clinics.
    """
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    consultant_id: str = Field(index=True)
    title: str
    description: str | None = None
    start_at: datetime = Field(sa_type=UTCDateTime, index=True)
    end_at: datetime = Field(sa_type=UTCDateTime)
    timezone: str
    location: str | None = None
    meeting_url: str | None = None
    recurrence_rule: str | None = None
    status: str = Field(default=EventStatus.PENDING_CONFIRMATION, index=True)
    consultant_confirm_status: str = Field(default=ConfirmStatus.PENDING)
    consultant_confirmed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    consultant_confirmed_by: str | None = None
    google_event_id: str | None = Field(default=None, index=True)
    google_etag: str | None = None
    google_calendar_id: str | None = None
    external_origin: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Relationships
    attendees: list["Attendee"] = Relationship(
        back_populates="event",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    change_requests: list["ChangeRequest"] = Relationship(
        back_populates="event",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


_OVERLAP_GUARD = f"""
WHEN NEW.status != 'cancelled' AND EXISTS (
    SELECT 1 FROM scheduleevent AS other
    WHERE other.consultant_id = NEW.consultant_id
      AND other.id != NEW.id
      AND other.status != 'cancelled'
      AND other.start_at < NEW.end_at
      AND other.end_at > NEW.start_at
)
BEGIN
    SELECT RAISE(ABORT, '{OVERLAP_CONSTRAINT}');
END
"""

sa_event.listen(
    ScheduleEvent.__table__,
    "after_create",
    DDL(
        f"CREATE TRIGGER IF NOT EXISTS {OVERLAP_CONSTRAINT}_insert "
        f"BEFORE INSERT ON scheduleevent {_OVERLAP_GUARD}"
    ).execute_if(dialect="sqlite"),
)
sa_event.listen(
    ScheduleEvent.__table__,
    "after_create",
    DDL(
        f"CREATE TRIGGER IF NOT EXISTS {OVERLAP_CONSTRAINT}_update "
        f"BEFORE UPDATE OF start_at, end_at, status, consultant_id ON scheduleevent "
        f"{_OVERLAP_GUARD}"
    ).execute_if(dialect="sqlite"),
)


class ScheduleEventCreate(SQLModel):
    """Payload for creating an event."""
    consultant_id: str
    title: str
    description: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    recurrence_rule: str | None = None
    clinic_ids: list[str] = []


class ScheduleEventUpdate(SQLModel):
    """Partial update. Omitted fields keep their value."""
    title: str | None = None
    description: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    recurrence_rule: str | None = None
    clinic_ids: list[str] | None = None
    force_status: EventStatus | None = None


class AttendeeRead(SQLModel):
    clinic_id: str
    confirm_status: str
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None


class ScheduleEventRead(SQLModel):
    id: UUID
    consultant_id: str
    title: str
    description: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str
    location: str | None = None
    meeting_url: str | None = None
    recurrence_rule: str | None = None
    status: str
    consultant_confirm_status: str
    google_event_id: str | None = None
    attendees: list[AttendeeRead] = []


class CalendarEntry(SQLModel):
    """One renderable agenda entry: an event occurrence or an external block."""
    key: str
    event_id: UUID | None = None
    external_block_id: UUID | None = None
    consultant_id: str
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    status: str
    is_external: bool = False
    recurrence_rule: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    confirm_status: str | None = None
