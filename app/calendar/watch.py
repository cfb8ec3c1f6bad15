"""Google push notification channels.

Google notifies ``WEBHOOK_PUBLIC_URL/sync/webhook`` whenever a watched
calendar changes. Notifications carry no event data; they only tell us to
run an import cycle. Channels expire (about a week), so a periodic job
re-subscribes the ones expiring soon.
"""
import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import httplib2
from googleapiclient.errors import HttpError
from sqlmodel import Session

from app.calendar import vault
from app.calendar.sync import run_sync_cycle
from app.calendar.sync_state import ChannelMeta, commit_cursor, find_by_channel_id, list_expiring_channels
from app.core.config import settings
from app.core.errors import ExternalServiceError, SchedulingError

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/sync/webhook"


def webhook_address() -> str:
    if not settings.webhook_public_url:
        raise ValueError("WEBHOOK_PUBLIC_URL must be configured to watch calendars")
    return f"{settings.webhook_public_url.rstrip('/')}{WEBHOOK_PATH}"


def create_watch_channel(service, calendar_id: str) -> ChannelMeta:
    """Subscribe to push notifications for a calendar under a fresh channel id."""
    body = {
        "id": str(uuid4()),
        "type": "web_hook",
        "address": webhook_address(),
    }
    try:
        response = service.events().watch(calendarId=calendar_id, body=body).execute()
    except HttpError as e:
        raise ExternalServiceError(f"Could not watch calendar {calendar_id}: {e}") from e
    except (httplib2.HttpLib2Error, OSError) as e:
        raise ExternalServiceError(f"Google Calendar unreachable: {e}") from e

    channel = ChannelMeta.from_watch_response(response)
    logger.info(f"Watching calendar {calendar_id} on channel {channel.channel_id}")
    return channel


def stop_channel(service, channel_id: str | None, channel_resource_id: str | None) -> None:
    """Stop a superseded channel. Google expires it anyway, so failures only log."""
    if not channel_id or not channel_resource_id:
        return
    try:
        service.channels().stop(body={"id": channel_id, "resourceId": channel_resource_id}).execute()
    except (HttpError, httplib2.HttpLib2Error, OSError) as e:
        logger.warning(f"Could not stop channel {channel_id}: {e}")


def renew_expiring_channels(session: Session, lead: timedelta | None = None) -> dict:
    """
    Re-subscribe every channel expiring within ``lead`` (default
    ``CHANNEL_RENEWAL_LEAD_HOURS``).

    Each renewal commits on its own; one failing resource is logged and
    skipped.

    Returns:
        dict with ``processed``, ``renewed`` and ``failed`` counts.
    """
    lead = lead or timedelta(hours=settings.channel_renewal_lead_hours)
    cutoff = datetime.now(UTC) + lead
    expiring = [
        (state.resource_id, state.calendar_id, state.channel_id, state.channel_resource_id)
        for state in list_expiring_channels(session, cutoff)
    ]
    summary = {"processed": len(expiring), "renewed": 0, "failed": 0}

    for resource_id, calendar_id, old_channel_id, old_channel_resource_id in expiring:
        try:
            access = vault.get_valid_access_token(session, resource_id)
            channel = create_watch_channel(access.calendar, calendar_id)
            commit_cursor(session, resource_id, calendar_id, channel=channel)
            session.commit()
        except (SchedulingError, ValueError) as e:
            session.rollback()
            summary["failed"] += 1
            logger.error(f"Channel renewal failed for {resource_id}/{calendar_id}: {e}")
            continue

        stop_channel(access.calendar, old_channel_id, old_channel_resource_id)
        summary["renewed"] += 1

    logger.info(f"Channel renewal finished: {summary}")
    return summary


def handle_notification(
    session: Session,
    channel_id: str | None,
    channel_resource_id: str | None = None,
    resource_state: str | None = None,
) -> bool:
    """
    React to one Google push notification.

    Args:
        channel_id: ``X-Goog-Channel-ID`` header.
        channel_resource_id: ``X-Goog-Resource-ID`` header.
        resource_state: ``X-Goog-Resource-State`` header. ``sync`` is the
            handshake Google sends when a channel is created.

    Returns:
        True if an import cycle ran. Never raises; Google retries
        notifications that are not answered with 2xx.
    """
    if not channel_id:
        return False

    state = find_by_channel_id(session, channel_id)
    if state is None:
        logger.debug(f"Notification for unknown channel {channel_id}")
        return False
    if channel_resource_id and state.channel_resource_id and channel_resource_id != state.channel_resource_id:
        logger.warning(f"Notification for channel {channel_id} with mismatched resource id")
        return False
    if resource_state == "sync":
        return False

    resource_id, calendar_id = state.resource_id, state.calendar_id
    try:
        run_sync_cycle(session, resource_id, calendar_id)
    except Exception as e:
        session.rollback()
        logger.error(f"Push-triggered sync failed for {resource_id}/{calendar_id}: {e}")
        return False
    return True
