"""Mirror local schedule events to the consultant's Google Calendar.

Exported events carry the local event id in
``extendedProperties.private.appEventId``; the importer uses it to tell
them apart from third-party events. Export is best-effort: failures are
logged and the next edit or sync reconciles.
"""
import logging
from enum import StrEnum
from uuid import UUID

import httplib2
from googleapiclient.errors import HttpError
from sqlmodel import Session

from app.calendar import vault
from app.core import database
from app.core.config import settings
from app.core.errors import SchedulingError
from app.models import Resource, ScheduleEvent
from app.models.types import ensure_utc
from app.scheduling.recurrence import to_google_recurrence

logger = logging.getLogger(__name__)

EXTERNAL_ORIGIN = "APP"


class ExportAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"


def build_remote_event(event: ScheduleEvent, action: str) -> dict:
    """Google event body for a local event."""
    timezone = event.timezone or settings.default_timezone
    description = "\n".join(
        part for part in (event.description, f"Meeting: {event.meeting_url}" if event.meeting_url else None) if part
    )
    body = {
        "summary": event.title,
        "start": {"dateTime": ensure_utc(event.start_at).isoformat(), "timeZone": timezone},
        "end": {"dateTime": ensure_utc(event.end_at).isoformat(), "timeZone": timezone},
        "extendedProperties": {"private": {"appEventId": str(event.id)}},
    }
    if description:
        body["description"] = description
    if event.location:
        body["location"] = event.location

    recurrence = to_google_recurrence(event.recurrence_rule)
    if recurrence:
        body["recurrence"] = recurrence
    elif action == ExportAction.UPDATE:
        # Patch keeps fields that are left out, so clear the series explicitly
        body["recurrence"] = []
    return body


def export_event(session: Session, event_id: UUID, action: str) -> bool:
    """
    Push one local change to Google Calendar.

    Returns:
        True when Google was updated; False when the consultant has no
        connected calendar or the call failed.
    """
    action = ExportAction(action)
    event = session.get(ScheduleEvent, event_id)
    if event is None:
        logger.warning(f"Export skipped, event {event_id} no longer exists")
        return False

    resource = session.get(Resource, event.consultant_id)
    if not resource or not resource.google_connected or not resource.google_calendar_id:
        logger.debug(f"Export skipped, no calendar connected for {event.consultant_id}")
        return False
    calendar_id = resource.google_calendar_id

    try:
        service = vault.get_valid_access_token(session, event.consultant_id).calendar
        events = service.events()
        google_event_id, google_etag = event.google_event_id, event.google_etag

        if action == ExportAction.CANCEL:
            if google_event_id:
                try:
                    events.delete(calendarId=calendar_id, eventId=google_event_id).execute()
                except HttpError as e:
                    if e.resp.status not in (404, 410):
                        raise
                    logger.info(f"Remote event {google_event_id} was already gone")
        else:
            body = build_remote_event(event, action)
            if google_event_id and action == ExportAction.UPDATE:
                response = events.patch(calendarId=calendar_id, eventId=google_event_id, body=body).execute()
            else:
                response = events.insert(calendarId=calendar_id, body=body).execute()
            google_event_id = response.get("id") or google_event_id
            google_etag = response.get("etag") or google_etag
    except (SchedulingError, HttpError, httplib2.HttpLib2Error, OSError) as e:
        logger.error(f"Export of event {event_id} ({action}) failed: {e}")
        return False

    event.google_event_id = google_event_id
    event.google_etag = google_etag
    event.google_calendar_id = calendar_id
    event.external_origin = EXTERNAL_ORIGIN
    session.add(event)
    session.commit()

    logger.info(f"Exported event {event_id} ({action}) as {google_event_id}")
    return True


def run_export(event_id: UUID, action: str) -> None:
    """Background task entry point with its own session."""
    with Session(database.engine) as session:
        export_event(session, event_id, action)
