"""Scheduling resources (consultants) and their clinic memberships.

A resource owns one Google account and one calendar. Imported external
blocks are attributed to the resource's owning clinic, resolved from the
profile first and from the most recent active membership otherwise.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.types import UTCDateTime, utcnow


class Resource(SQLModel, table=True):
    """A consultant whose agenda is scheduled and mirrored to Google Calendar.

    Attributes:
        id: Opaque user identifier issued by the identity provider.
        full_name: Display name.
        clinic_id: Owning clinic, if set on the profile.
        google_calendar_link: Calendar link or id pasted by the user. Parsed
            once during the OAuth callback to pick the calendar to sync.
        google_calendar_id: The calendar actually synced.
        google_connected: True once the OAuth flow completed.
        timezone: IANA timezone used for working hours and recurrences.
        last_google_sync_at: When the last import cycle finished.
    """
    id: str = Field(primary_key=True)
    full_name: str = ""
    clinic_id: str | None = Field(default=None, index=True)
    google_calendar_link: str | None = None
    google_calendar_id: str | None = None
    google_connected: bool = Field(default=False)
    timezone: str | None = None
    last_google_sync_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class ClinicMembership(SQLModel, table=True):
    """Links a user to a clinic."""
    id: int | None = Field(default=None, primary_key=True)
    clinic_id: str = Field(index=True)
    user_id: str = Field(index=True)
    active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
