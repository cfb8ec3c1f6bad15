"""Normalize raw Google Calendar event resources.

Google returns loosely shaped JSON: optional fields, ``dateTime`` or
``date`` depending on the event kind, and conference links in several
places. Everything past this module sees ``NormalizedEvent`` only.
"""
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.models.external_block import BLOCK_CANCELLED, BLOCK_CONFIRMED
from app.models.types import ensure_utc


@dataclass
class NormalizedEvent:
    """Canonical shape of one remote event."""
    google_event_id: str
    status: str
    start_at: datetime | None
    end_at: datetime | None
    all_day: bool = False
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    html_link: str | None = None
    attendees: list[dict[str, Any]] = field(default_factory=list)
    google_updated: str | None = None
    etag: str | None = None
    app_event_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == BLOCK_CANCELLED

    @property
    def has_times(self) -> bool:
        return self.start_at is not None and self.end_at is not None


def parse_event_time(value: dict | None) -> tuple[datetime | None, bool]:
    """
    Parse a Google ``start``/``end`` object.

    Returns:
        (UTC datetime, all_day). Timed values use ``dateTime``; all-day
        values fall back to ``date`` at midnight UTC. (None, False) when
        neither is present or parseable.
    """
    if not value:
        return None, False

    if value.get("dateTime"):
        try:
            parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        except ValueError:
            return None, False
        if parsed.tzinfo is None and value.get("timeZone"):
            try:
                parsed = parsed.replace(tzinfo=ZoneInfo(value["timeZone"]))
            except ZoneInfoNotFoundError:
                pass
        return ensure_utc(parsed), False

    if value.get("date"):
        try:
            day = date.fromisoformat(value["date"])
        except ValueError:
            return None, False
        return datetime(day.year, day.month, day.day, tzinfo=UTC), True

    return None, False


def extract_meeting_url(event: dict) -> str | None:
    """The Meet link, else the first video entry point, else any entry point."""
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
    for entry in entry_points:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    for entry in entry_points:
        if entry.get("uri"):
            return entry["uri"]
    return None


def summarize_attendees(attendees: list[dict] | None) -> list[dict[str, Any]]:
    """Reduce Google attendees to the fields kept for reporting."""
    return [
        {
            "email": att.get("email"),
            "name": att.get("displayName"),
            "response_status": att.get("responseStatus"),
            "self": bool(att.get("self", False)),
            "organizer": bool(att.get("organizer", False)),
        }
        for att in attendees or []
    ]


def app_event_id(event: dict) -> str | None:
    """Local ScheduleEvent id stamped on events this system exported."""
    private = (event.get("extendedProperties") or {}).get("private") or {}
    return private.get("appEventId") or None


def normalize_external_event(event: dict) -> NormalizedEvent | None:
    """
    Normalize one item of an ``events.list`` page.

    Returns None for items that cannot be used: no id, or a live event
    whose times are missing. Cancelled items are kept without times, since
    incremental syncs report deletions as bare ids.
    """
    google_event_id = event.get("id")
    if not google_event_id:
        return None

    status = BLOCK_CANCELLED if event.get("status") == "cancelled" else BLOCK_CONFIRMED
    start_at, all_day = parse_event_time(event.get("start"))
    end_at, _ = parse_event_time(event.get("end"))

    if (start_at is None or end_at is None) and status != BLOCK_CANCELLED:
        return None

    return NormalizedEvent(
        google_event_id=google_event_id,
        status=status,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        summary=event.get("summary"),
        description=event.get("description"),
        location=event.get("location"),
        meeting_url=extract_meeting_url(event),
        html_link=event.get("htmlLink"),
        attendees=summarize_attendees(event.get("attendees")),
        google_updated=event.get("updated"),
        etag=event.get("etag"),
        app_event_id=app_event_id(event),
    )
