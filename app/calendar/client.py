"""Google Calendar API client construction and OAuth flow helpers."""
import base64
import binascii
import logging
import re
from urllib.parse import parse_qs, unquote, urlparse

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Scopes for Google Calendar API
SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
]

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def redirect_uri() -> str:
    return f"{settings.app_url.rstrip('/')}/auth/google/callback"


def build_flow() -> Flow:
    """Create the web-server OAuth flow for the configured client.

    The consent URL and the code exchange are built in separate requests,
    so no PKCE verifier is generated.
    """
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be configured")

    client_config = {
        "web": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [redirect_uri()],
        }
    }
    return Flow.from_client_config(
        client_config,
        scopes=SCOPES,
        redirect_uri=redirect_uri(),
        autogenerate_code_verifier=False,
    )


def build_calendar_service(access_token: str):
    """Build an authenticated Calendar API service for one access token.

    Each HTTP call made through the service is bounded by
    ``GOOGLE_HTTP_TIMEOUT_SECONDS``.
    """
    credentials = Credentials(token=access_token, scopes=SCOPES)
    http = google_auth_httplib2.AuthorizedHttp(
        credentials, http=httplib2.Http(timeout=settings.google_http_timeout_seconds)
    )
    return build("calendar", "v3", http=http, cache_discovery=False)


def _b64url_decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8")


def extract_calendar_id(link: str | None) -> str | None:
    """
    Extract a calendar id from what a user pasted in their profile.

    Accepts a bare calendar id (``someone@group.calendar.google.com``), or a
    Google Calendar share link carrying it in ``cid`` (base64url encoded) or
    ``src`` (URL encoded).
    """
    if not link or not link.strip():
        return None
    link = link.strip()

    if "@" in link and "http" not in link:
        return link

    query = parse_qs(urlparse(link).query)
    cid = (query.get("cid") or [None])[0]
    src = (query.get("src") or [None])[0]
    if not cid:
        match = re.search(r"cid=([^&]+)", link, re.IGNORECASE)
        cid = match.group(1) if match else None
    if not src:
        match = re.search(r"src=([^&]+)", link, re.IGNORECASE)
        src = unquote(match.group(1)) if match else None

    if cid:
        try:
            return _b64url_decode(cid)
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
    return src or None


def resolve_calendar_id(service, candidate: str | None) -> str:
    """Return ``candidate`` if accessible, else the primary (or first) calendar."""
    if candidate:
        try:
            service.calendars().get(calendarId=candidate).execute()
            return candidate
        except HttpError as e:
            logger.warning(f"Calendar {candidate} not accessible, falling back: {e}")

    items = service.calendarList().list().execute().get("items", [])
    for item in items:
        if item.get("primary"):
            return item["id"]
    if items:
        return items[0]["id"]
    return "primary"
