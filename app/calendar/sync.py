"""Calendar synchronization service.

Pulls Google Calendar changes for one (resource, calendar) pair since the
stored sync token and folds them into local state:

- events this system exported (tagged with ``appEventId``, or carrying the
  Google id already stored on a local ScheduleEvent) only update the
  mirrored Google id/etag of that event, and cancel it when Google reports
  it cancelled;
- every other event is upserted as an ExternalBlock.

The cursor of the final page is committed in the same transaction as the
imported rows. A rejected cursor is cleared and the cycle restarts as a
full sync.
"""
import logging
import threading
from datetime import UTC, datetime
from uuid import UUID

import httplib2
from googleapiclient.errors import HttpError
from sqlmodel import Session, select

from app.calendar import vault
from app.calendar.parser import NormalizedEvent, normalize_external_event
from app.calendar.sync_state import clear_cursor, commit_cursor, get_state, list_states, load_cursor
from app.core.errors import CursorInvalidated, ExternalServiceError, NotFoundError
from app.models import ClinicMembership, EventStatus, ExternalBlock, Resource, ScheduleEvent
from app.models.external_block import BLOCK_CANCELLED

logger = logging.getLogger(__name__)

PAGE_SIZE = 2500
COUNTERS = ("created", "updated", "cancelled", "mirrored", "skipped")

_sync_locks: dict[tuple[str, str], threading.Lock] = {}
_sync_locks_guard = threading.Lock()


def _lock_for(resource_id: str, calendar_id: str) -> threading.Lock:
    with _sync_locks_guard:
        return _sync_locks.setdefault((resource_id, calendar_id), threading.Lock())


def resolve_owning_clinic(session: Session, resource_id: str) -> str | None:
    """Clinic of the resource's profile, else its most recent active membership."""
    resource = session.get(Resource, resource_id)
    if resource and resource.clinic_id:
        return resource.clinic_id

    statement = (
        select(ClinicMembership)
        .where(ClinicMembership.user_id == resource_id)
        .where(ClinicMembership.active == True)  # noqa: E712
        .order_by(ClinicMembership.created_at.desc())
    )
    membership = session.exec(statement).first()
    return membership.clinic_id if membership else None


def _is_cursor_rejection(error: HttpError) -> bool:
    """Google answers 410 Gone when a sync token expired or is invalid."""
    if error.resp.status == 410:
        return True
    return error.resp.status == 400 and "sync token" in str(error).lower()


def _list_page(service, calendar_id: str, sync_token: str | None, page_token: str | None) -> dict:
    params = {
        "calendarId": calendar_id,
        "singleEvents": True,
        "showDeleted": True,
        "maxResults": PAGE_SIZE,
    }
    if page_token:
        params["pageToken"] = page_token
    if sync_token:
        params["syncToken"] = sync_token

    try:
        return service.events().list(**params).execute()
    except HttpError as e:
        if sync_token and _is_cursor_rejection(e):
            raise CursorInvalidated(f"Sync token rejected for calendar {calendar_id}") from e
        raise ExternalServiceError(f"Google Calendar list failed: {e}") from e
    except (httplib2.HttpLib2Error, OSError) as e:
        raise ExternalServiceError(f"Google Calendar unreachable: {e}") from e


def _find_exported_event(session: Session, google_event_id: str, calendar_id: str) -> ScheduleEvent | None:
    """Local event already exported to ``calendar_id`` under ``google_event_id``."""
    statement = (
        select(ScheduleEvent)
        .where(ScheduleEvent.google_calendar_id == calendar_id)
        .where(ScheduleEvent.google_event_id == google_event_id)
    )
    return session.exec(statement).first()


def _tagged_local_event(session: Session, remote: NormalizedEvent, stats: dict) -> ScheduleEvent | None:
    """Local event named by a remote item's ``appEventId``."""
    try:
        event_id = UUID(remote.app_event_id)
    except ValueError:
        logger.warning(f"Ignoring remote event {remote.google_event_id} with malformed appEventId")
        stats["skipped"] += 1
        return None

    event = session.get(ScheduleEvent, event_id)
    if not event:
        logger.debug(f"Remote event {remote.google_event_id} points at unknown local event {event_id}")
        stats["skipped"] += 1
    return event


def _mirror_local_event(
    session: Session,
    event: ScheduleEvent,
    remote: NormalizedEvent,
    calendar_id: str,
    stats: dict,
) -> None:
    """Update the local event a remote item was exported from. Status-only."""
    event.google_event_id = remote.google_event_id
    event.google_etag = remote.etag or event.google_etag
    event.google_calendar_id = calendar_id
    if remote.is_cancelled and event.status != EventStatus.CANCELLED:
        logger.info(f"Local event {event.id} cancelled from Google Calendar")
        event.status = EventStatus.CANCELLED
        event.updated_at = datetime.now(UTC)
        stats["cancelled"] += 1
    session.add(event)
    stats["mirrored"] += 1


def _upsert_block(
    session: Session,
    remote: NormalizedEvent,
    resource_id: str,
    calendar_id: str,
    clinic_id: str,
    stats: dict,
) -> None:
    """Create or update the ExternalBlock for a remote event."""
    statement = (
        select(ExternalBlock)
        .where(ExternalBlock.calendar_id == calendar_id)
        .where(ExternalBlock.google_event_id == remote.google_event_id)
    )
    block = session.exec(statement).first()

    if remote.is_cancelled and (block is None or not remote.has_times):
        # Bare deletion: cancel what we have, never create a cancelled block
        if block is not None and block.status != BLOCK_CANCELLED:
            block.status = BLOCK_CANCELLED
            block.updated_at = datetime.now(UTC)
            session.add(block)
            stats["cancelled"] += 1
        else:
            stats["skipped"] += 1
        return

    created = block is None
    if created:
        block = ExternalBlock(
            calendar_id=calendar_id,
            google_event_id=remote.google_event_id,
            clinic_id=clinic_id,
            resource_id=resource_id,
            start_at=remote.start_at,
            end_at=remote.end_at,
        )

    block.clinic_id = clinic_id
    block.resource_id = resource_id
    block.start_at = remote.start_at
    block.end_at = remote.end_at
    block.all_day = remote.all_day
    block.summary = remote.summary
    block.description = remote.description
    block.location = remote.location
    block.meeting_url = remote.meeting_url
    block.html_link = remote.html_link
    block.attendees = remote.attendees
    block.status = remote.status
    block.google_updated = remote.google_updated
    block.updated_at = datetime.now(UTC)
    session.add(block)

    if created:
        stats["created"] += 1
    elif remote.is_cancelled:
        stats["cancelled"] += 1
    else:
        stats["updated"] += 1


def _pull(
    session: Session,
    service,
    resource_id: str,
    calendar_id: str,
    clinic_id: str,
    sync_token: str | None,
    stats: dict,
) -> str | None:
    """Fold every page into the session. Returns the final page's nextSyncToken."""
    stats["full_sync"] = sync_token is None
    page_token = None
    next_sync_token = None

    while True:
        page = _list_page(service, calendar_id, sync_token, page_token)
        for item in page.get("items", []):
            remote = normalize_external_event(item)
            if remote is None:
                stats["skipped"] += 1
            elif remote.app_event_id:
                event = _tagged_local_event(session, remote, stats)
                if event:
                    _mirror_local_event(session, event, remote, calendar_id, stats)
            else:
                # Deletions arrive bare, without the appEventId tag
                event = _find_exported_event(session, remote.google_event_id, calendar_id)
                if event:
                    _mirror_local_event(session, event, remote, calendar_id, stats)
                else:
                    _upsert_block(session, remote, resource_id, calendar_id, clinic_id, stats)

        # Only the last page carries nextSyncToken
        if page.get("nextSyncToken"):
            next_sync_token = page["nextSyncToken"]
        page_token = page.get("nextPageToken")
        if not page_token:
            return next_sync_token


def sync_calendar(session: Session, resource_id: str, calendar_id: str, service) -> dict:
    """
    Import Google Calendar changes for one resource calendar.

    Returns dict with sync statistics. When the resource has no owning
    clinic, or another cycle for the same calendar is running, nothing is
    imported and no cursor is committed.

    Raises:
        ExternalServiceError: Google could not be reached or failed.
    """
    stats: dict = dict.fromkeys(COUNTERS, 0)
    stats["full_sync"] = False

    clinic_id = resolve_owning_clinic(session, resource_id)
    if not clinic_id:
        logger.warning(f"No owning clinic for resource {resource_id}, skipping sync")
        stats["error"] = "no_clinic"
        return stats

    lock = _lock_for(resource_id, calendar_id)
    if not lock.acquire(blocking=False):
        logger.info(f"Sync already running for {resource_id}/{calendar_id}, skipping")
        stats["in_progress"] = True
        return stats

    try:
        sync_token = load_cursor(session, resource_id, calendar_id)
        try:
            next_sync_token = _pull(session, service, resource_id, calendar_id, clinic_id, sync_token, stats)
        except CursorInvalidated:
            logger.info(f"Sync token expired for {resource_id}/{calendar_id}, performing full sync")
            session.rollback()
            clear_cursor(session, resource_id, calendar_id)
            session.commit()
            stats.update(dict.fromkeys(COUNTERS, 0))
            next_sync_token = _pull(session, service, resource_id, calendar_id, clinic_id, None, stats)

        if next_sync_token:
            commit_cursor(session, resource_id, calendar_id, next_sync_token)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Sync failed for {resource_id}/{calendar_id}: {e}")
        raise
    finally:
        lock.release()

    logger.info(f"Sync completed for {resource_id}/{calendar_id}: {stats}")
    return stats


def resolve_calendar_for(session: Session, resource_id: str) -> str:
    """Calendar id to sync for a resource: its connected calendar, else its sync state."""
    resource = session.get(Resource, resource_id)
    if resource and resource.google_calendar_id:
        return resource.google_calendar_id
    state = get_state(session, resource_id)
    if state:
        return state.calendar_id
    raise NotFoundError(f"No Google calendar connected for resource {resource_id}")


def run_sync_cycle(session: Session, resource_id: str, calendar_id: str | None = None) -> dict:
    """
    Run one full import cycle for a resource: credentials, cursor, import.

    Used by the manual sync button, the webhook receiver and the periodic
    sweep.
    """
    calendar_id = calendar_id or resolve_calendar_for(session, resource_id)
    access = vault.get_valid_access_token(session, resource_id)
    stats = sync_calendar(session, resource_id, calendar_id, access.calendar)

    if not stats.get("error") and not stats.get("in_progress"):
        resource = session.get(Resource, resource_id)
        if resource:
            resource.last_google_sync_at = datetime.now(UTC)
            session.add(resource)
            session.commit()
    return stats


def sync_all_resources(session: Session) -> dict:
    """
    Periodic sweep over every known sync state.

    Failures are logged per resource and never stop the sweep.
    """
    pairs = [(state.resource_id, state.calendar_id) for state in list_states(session)]
    summary = {"processed": 0, "failed": 0}

    for resource_id, calendar_id in pairs:
        try:
            run_sync_cycle(session, resource_id, calendar_id)
            summary["processed"] += 1
        except Exception as e:
            session.rollback()
            summary["failed"] += 1
            logger.error(f"Background sync failed for {resource_id}/{calendar_id}: {e}")

    return summary
