"""Completes a resource's Google Calendar connection after OAuth consent."""
import logging

from sqlmodel import Session, select

from app.calendar import vault
from app.calendar.client import extract_calendar_id, resolve_calendar_id
from app.calendar.sync import sync_calendar
from app.calendar.sync_state import commit_cursor, list_states
from app.calendar.watch import create_watch_channel, stop_channel
from app.core.config import settings
from app.core.errors import NotFoundError
from app.models import ExternalBlock, Resource, SyncState

logger = logging.getLogger(__name__)


def _retire_calendar(session: Session, service, state: SyncState) -> None:
    """Forget a calendar the resource no longer syncs: its channel, blocks and cursor."""
    stop_channel(service, state.channel_id, state.channel_resource_id)
    statement = (
        select(ExternalBlock)
        .where(ExternalBlock.resource_id == state.resource_id)
        .where(ExternalBlock.calendar_id == state.calendar_id)
    )
    for block in session.exec(statement).all():
        session.delete(block)
    session.delete(state)
    logger.info(f"Stopped syncing calendar {state.calendar_id} for resource {state.resource_id}")


def connect_calendar(session: Session, resource_id: str, code: str) -> str:
    """
    Exchange the authorization code and set up syncing for a resource.

    Stores the encrypted tokens, resolves the calendar from the pasted
    link (falling back to the primary calendar), subscribes to push
    notifications and runs the initial full import. A resource syncs one
    calendar, so a previously connected one is retired.

    Returns:
        The calendar id now synced for the resource.
    """
    resource = session.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError(f"Resource {resource_id} not found")

    vault.store_tokens(session, resource_id, vault.exchange_code(code))
    access = vault.get_valid_access_token(session, resource_id)

    candidate = extract_calendar_id(resource.google_calendar_link or resource.google_calendar_id)
    calendar_id = resolve_calendar_id(access.calendar, candidate)

    for state in list_states(session, resource_id):
        if state.calendar_id != calendar_id:
            _retire_calendar(session, access.calendar, state)

    resource.google_calendar_id = calendar_id
    resource.google_connected = True
    session.add(resource)
    state = commit_cursor(session, resource_id, calendar_id)
    previous_channel = (state.channel_id, state.channel_resource_id)
    session.commit()

    if settings.webhook_public_url:
        channel = create_watch_channel(access.calendar, calendar_id)
        commit_cursor(session, resource_id, calendar_id, channel=channel)
        session.commit()
        stop_channel(access.calendar, *previous_channel)
    else:
        logger.warning("WEBHOOK_PUBLIC_URL not set, relying on periodic sync only")

    stats = sync_calendar(session, resource_id, calendar_id, access.calendar)
    logger.info(f"Connected calendar {calendar_id} for resource {resource_id}: {stats}")
    return calendar_id
