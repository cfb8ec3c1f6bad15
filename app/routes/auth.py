"""Google OAuth routes connecting a resource's calendar."""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from app.calendar import vault
from app.calendar.connect import connect_calendar
from app.calendar.sync_state import get_state
from app.core.config import settings
from app.core.database import get_session
from app.core.errors import SchedulingError
from app.models import Resource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

DEFAULT_RETURN_TO = "/profile?gcal=connected"


def _safe_return_to(value: str | None) -> str | None:
    """Only same-site paths are accepted as redirect targets."""
    if value and value.startswith("/") and not value.startswith("//"):
        return value
    return None


def _redirect_with_error(return_to: str | None, reason: str) -> RedirectResponse:
    path = _safe_return_to(return_to) or "/profile"
    separator = "&" if "?" in path else "?"
    url = f"{settings.app_url.rstrip('/')}{path}{separator}{urlencode({'gcal_error': reason})}"
    return RedirectResponse(url, status_code=302)


@router.get("/google/start")
async def google_start(
    request: Request,
    resource_id: str,
    return_to: str | None = None,
    session: Session = Depends(get_session),
):
    """
    Start the Google OAuth flow for a resource.

    Redirects to Google's consent page, or returns ``{"url": ...}`` when
    the client asks for JSON.
    """
    resource = session.get(Resource, resource_id)
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found")

    try:
        state = vault.build_signed_state(
            {
                "resource_id": resource_id,
                "clinic_id": resource.clinic_id,
                "return_to": _safe_return_to(return_to),
            }
        )
        url = vault.build_authorization_url(state)
    except ValueError as e:
        logger.error(f"OAuth start failed: {e}")
        raise HTTPException(status_code=500, detail="Google OAuth is not configured")

    if "application/json" in request.headers.get("accept", ""):
        return {"url": url}
    return RedirectResponse(url, status_code=302)


@router.get("/google/callback")
def google_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    session: Session = Depends(get_session),
):
    """
    Handle Google's redirect after consent.

    Every failure redirects back to the app with ``gcal_error`` set, so the
    user never lands on a raw error page.
    """
    try:
        payload = vault.verify_signed_state(state)
    except ValueError as e:
        logger.error(f"OAuth callback cannot verify state: {e}")
        payload = None
    if payload is None:
        logger.warning("OAuth callback with invalid or expired state")
        return _redirect_with_error(None, "invalid_state")
    return_to = payload.get("return_to")

    if error or not code:
        logger.info(f"OAuth consent not granted: {error}")
        return _redirect_with_error(return_to, error or "missing_code")

    resource_id = payload.get("resource_id")
    try:
        connect_calendar(session, resource_id, code)
    except (SchedulingError, ValueError) as e:
        session.rollback()
        logger.error(f"Calendar connection failed for {resource_id}: {e}")
        return _redirect_with_error(return_to, getattr(e, "code", "connection_failed"))

    target = _safe_return_to(return_to) or DEFAULT_RETURN_TO
    return RedirectResponse(f"{settings.app_url.rstrip('/')}{target}", status_code=302)


@router.get("/status/{resource_id}")
async def auth_status(resource_id: str, session: Session = Depends(get_session)):
    """
    Connection status for a resource.

    Returns JSON with whether tokens are stored, the synced calendar and
    the last sync time.
    """
    resource = session.get(Resource, resource_id)
    if not resource:
        raise HTTPException(status_code=404, detail="Resource not found")

    has_tokens = vault.has_credentials(session, resource_id)
    state = get_state(session, resource_id, resource.google_calendar_id)
    return {
        "resource_id": resource_id,
        "connected": resource.google_connected and has_tokens,
        "calendar_id": resource.google_calendar_id,
        "has_sync_token": bool(state and state.sync_token),
        "last_sync_time": resource.last_google_sync_at.isoformat() if resource.last_google_sync_at else None,
    }
