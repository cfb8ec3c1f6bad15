"""Attendee model linking clinics to schedule events.

This module defines the Attendee model which represents a clinic invited
to an event. Each clinic confirms or declines its own attendance; the
event's aggregate status is derived from these answers by
``app.scheduling.workflow``.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

from app.models.event import ConfirmStatus
from app.models.types import UTCDateTime

if TYPE_CHECKING:
    from app.models.event import ScheduleEvent


class Attendee(SQLModel, table=True):
    """A clinic invited to an event.

    Attributes:
        id: Unique identifier (UUID).
        event_id: Foreign key to the parent ScheduleEvent.
        clinic_id: The invited clinic.
        confirm_status: One of "pending", "confirmed" or "declined".
        confirmed_by: User who answered on behalf of the clinic.
        confirmed_at: When the answer was recorded.
        event: Reference to the parent ScheduleEvent object.
    """
    __table_args__ = (UniqueConstraint("event_id", "clinic_id"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_id: UUID = Field(foreign_key="scheduleevent.id", index=True)
    clinic_id: str = Field(index=True)
    confirm_status: str = Field(default=ConfirmStatus.PENDING)
    confirmed_by: str | None = None
    confirmed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    # Relationship
    event: Optional["ScheduleEvent"] = Relationship(back_populates="attendees")
