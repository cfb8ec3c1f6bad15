"""Read-only mirror of third-party Google Calendar events.

External blocks are written exclusively by the importer
(``app.calendar.sync``). Scheduling clients only read them, to render a
consultant's real availability next to the events this system authored.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.types import UTCDateTime, utcnow

BLOCK_CONFIRMED = "confirmed"
BLOCK_CANCELLED = "cancelled"


class ExternalBlock(SQLModel, table=True):
    """A Google Calendar event not created by this system.

    Attributes:
        calendar_id: Google calendar the event lives on.
        google_event_id: Google event id, unique per calendar (upsert key).
        clinic_id: Clinic the owning resource belongs to.
        resource_id: Resource whose calendar was imported.
        start_at: Start (UTC). All-day events start at midnight UTC.
        end_at: End (UTC), exclusive.
        all_day: True when Google only supplied dates.
        attendees: Reporting-only summaries
            (email, name, response_status, self, organizer).
        status: "confirmed" or "cancelled".
        google_updated: Google's ``updated`` stamp, verbatim.
    """
    __table_args__ = (UniqueConstraint("calendar_id", "google_event_id"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    calendar_id: str
    google_event_id: str = Field(index=True)
    clinic_id: str = Field(index=True)
    resource_id: str = Field(index=True)
    start_at: datetime = Field(sa_type=UTCDateTime)
    end_at: datetime = Field(sa_type=UTCDateTime)
    all_day: bool = Field(default=False)
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    html_link: str | None = None
    attendees: list[dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    status: str = Field(default=BLOCK_CONFIRMED)
    google_updated: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
