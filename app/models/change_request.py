"""Change request model for clinic-initiated reschedule proposals.

A clinic that cannot make it at the scheduled time opens a change request.
The event moves to ``reschedule_requested`` until an admin accepts the
request (moving the event) or rejects it.
"""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from sqlmodel import Field, Relationship, SQLModel

from app.models.types import UTCDateTime, utcnow

if TYPE_CHECKING:
    from app.models.event import ScheduleEvent


class ChangeRequestStatus(StrEnum):
    OPEN = "open"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ChangeRequest(SQLModel, table=True):
    """A proposal to move an existing event.

    Attributes:
        id: Unique identifier (UUID).
        event_id: Foreign key to the target ScheduleEvent.
        clinic_id: Clinic that raised the request.
        requested_by: User who raised the request.
        reason: Why the clinic needs a new time.
        suggested_start_at: Optional proposed start.
        suggested_end_at: Optional proposed end.
        status: One of ``ChangeRequestStatus``.
        handled_by: Admin who resolved the request.
        handled_at: When the request was resolved.
        event: Reference to the target ScheduleEvent object.
    """
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_id: UUID = Field(foreign_key="scheduleevent.id", index=True)
    clinic_id: str = Field(index=True)
    requested_by: str
    reason: str
    suggested_start_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    suggested_end_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    status: str = Field(default=ChangeRequestStatus.OPEN, index=True)
    handled_by: str | None = None
    handled_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Relationship
    event: Optional["ScheduleEvent"] = Relationship(back_populates="change_requests")


class ChangeRequestCreate(SQLModel):
    clinic_id: str
    requested_by: str
    reason: str
    suggested_start_at: datetime | None = None
    suggested_end_at: datetime | None = None


class ChangeRequestResolve(SQLModel):
    outcome: ChangeRequestStatus
    handled_by: str
    start_at: datetime | None = None
    end_at: datetime | None = None


class ChangeRequestRead(SQLModel):
    id: UUID
    event_id: UUID
    clinic_id: str
    requested_by: str
    reason: str
    suggested_start_at: datetime | None = None
    suggested_end_at: datetime | None = None
    status: str
    handled_by: str | None = None
    handled_at: datetime | None = None
    created_at: datetime
