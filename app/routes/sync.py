"""Sync routes for triggering and monitoring calendar sync."""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Response
from pydantic import BaseModel
from sqlmodel import Session

from app.calendar.sync import run_sync_cycle
from app.calendar.sync_state import get_state
from app.calendar.watch import handle_notification, renew_expiring_channels
from app.core.config import settings
from app.core.database import get_session
from app.core.security import require_internal_key
from app.models import Resource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncRequest(BaseModel):
    resource_id: str


@router.post("/now", dependencies=[Depends(require_internal_key)])
def trigger_sync(payload: SyncRequest, session: Session = Depends(get_session)):
    """
    Manually trigger one import cycle for a resource.

    Unlike the webhook and the periodic sweep, errors are surfaced:
    401 asks the user to reconnect the calendar, 502 means Google failed.
    """
    stats = run_sync_cycle(session, payload.resource_id)
    return {"ok": not stats.get("error"), "stats": stats}


@router.post("/webhook")
def push_webhook(
    session: Session = Depends(get_session),
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
):
    """
    Receive a Google Calendar push notification.

    Always answers 200; Google retries anything else and has no use for
    our errors.
    """
    handle_notification(session, x_goog_channel_id, x_goog_resource_id, x_goog_resource_state)
    return Response(status_code=200)


@router.post("/renew", dependencies=[Depends(require_internal_key)])
def renew_channels(session: Session = Depends(get_session)):
    """Re-subscribe push channels expiring within the renewal lead window."""
    summary = renew_expiring_channels(session)
    return {"ok": True, **summary}


@router.get("/status/{resource_id}")
async def sync_status(resource_id: str, session: Session = Depends(get_session)):
    """
    Get current sync status for a resource.

    Returns JSON with the synced calendar, sync token presence, channel
    expiration and sync interval configuration.
    """
    resource = session.get(Resource, resource_id)
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found")

    state = get_state(session, resource_id, resource.google_calendar_id)
    return {
        "resource_id": resource_id,
        "calendar_id": state.calendar_id if state else resource.google_calendar_id,
        "has_sync_token": bool(state and state.sync_token),
        "channel_expiration": (
            state.channel_expiration.isoformat() if state and state.channel_expiration else None
        ),
        "last_synced_at": state.last_synced_at.isoformat() if state and state.last_synced_at else None,
        "last_sync_time": resource.last_google_sync_at.isoformat() if resource.last_google_sync_at else None,
        "sync_interval_minutes": settings.sync_interval_minutes,
    }
