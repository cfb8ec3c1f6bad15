"""Credential vault for per-resource Google OAuth tokens.

Tokens are encrypted at rest with AES-256-GCM. The key is derived from
``GOOGLE_TOKEN_SECRET`` (falling back to the OAuth client secret). Each
ciphertext is ``base64(nonce || ciphertext || tag)``, so decryption fails
closed on tampering or on a wrong key.

The vault also signs the OAuth ``state`` parameter. The signed state binds
the redirect to the resource that started it and expires after ten minutes,
which keeps the callback safe from CSRF and replay.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from sqlmodel import Session, select

from app.calendar import client
from app.core.config import settings
from app.core.errors import CredentialsNotFound, ExternalServiceError, RefreshFailed
from app.models import OAuthToken
from app.models.types import ensure_utc

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
REFRESH_MARGIN = timedelta(seconds=60)
STATE_TTL_SECONDS = 10 * 60

# Serializes refreshes per resource so concurrent callers reuse one rotation
_refresh_locks: dict[str, threading.Lock] = {}
_refresh_locks_guard = threading.Lock()


@dataclass
class TokenSet:
    """Plain OAuth tokens as returned by Google."""
    access_token: str
    refresh_token: str
    expires_at: datetime | None = None
    scope: str | None = None


@dataclass
class CalendarAccess:
    """A usable credential and a Calendar service built from it."""
    access_token: str
    refresh_token: str
    calendar: Any


def _key() -> bytes:
    secret = settings.token_secret
    if not secret:
        raise ValueError("GOOGLE_TOKEN_SECRET is not configured")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_secret(plain: str) -> str:
    """Encrypt a secret for storage. Empty input stays empty."""
    if not plain:
        return ""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(_key()).encrypt(nonce, plain.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_secret(payload: str) -> str:
    """Decrypt a stored secret.

    Returns an empty string if the payload is malformed, was tampered with,
    or was sealed with another key.
    """
    if not payload:
        return ""
    key = _key()
    try:
        raw = base64.b64decode(payload, validate=True)
        plain = AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
        return plain.decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError) as e:
        logger.warning(f"Could not decrypt stored secret: {type(e).__name__}")
        return ""


def _load_record(session: Session, resource_id: str) -> OAuthToken | None:
    statement = select(OAuthToken).where(OAuthToken.resource_id == resource_id)
    return session.exec(statement).first()


def has_credentials(session: Session, resource_id: str) -> bool:
    """True if a refresh or access token can be read for the resource."""
    record = _load_record(session, resource_id)
    if record is None:
        return False
    return bool(decrypt_secret(record.refresh_token) or decrypt_secret(record.access_token))


def store_tokens(session: Session, resource_id: str, tokens: TokenSet) -> TokenSet:
    """
    Encrypt and persist tokens for a resource.

    Google only issues a refresh token on the first consent (or a forced
    one). When ``tokens`` carries none, the stored refresh token is kept.

    Returns:
        The tokens as persisted.
    """
    record = _load_record(session, resource_id)
    refresh_token = tokens.refresh_token
    if not refresh_token and record:
        refresh_token = decrypt_secret(record.refresh_token)

    if record is None:
        record = OAuthToken(resource_id=resource_id)

    record.access_token = encrypt_secret(tokens.access_token or "")
    record.refresh_token = encrypt_secret(refresh_token or "")
    record.expires_at = ensure_utc(tokens.expires_at)
    record.scope = tokens.scope or record.scope
    record.updated_at = datetime.now(UTC)
    session.add(record)
    session.commit()

    return TokenSet(
        access_token=tokens.access_token or "",
        refresh_token=refresh_token or "",
        expires_at=record.expires_at,
        scope=record.scope,
    )


def _needs_refresh(access_token: str, expires_at: datetime | None) -> bool:
    if not access_token:
        return True
    if expires_at is None:
        return False
    return datetime.now(UTC) > ensure_utc(expires_at) - REFRESH_MARGIN


def _lock_for(resource_id: str) -> threading.Lock:
    with _refresh_locks_guard:
        return _refresh_locks.setdefault(resource_id, threading.Lock())


def exchange_refresh_token(refresh_token: str) -> TokenSet:
    """Trade a refresh token for a new access token (blocking HTTP call)."""
    credentials = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=client.TOKEN_URI,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=client.SCOPES,
    )
    try:
        credentials.refresh(Request())
    except RefreshError as e:
        raise RefreshFailed(f"Google rejected the refresh token: {e}") from e
    except TransportError as e:
        raise ExternalServiceError(f"Could not reach Google token endpoint: {e}") from e

    return TokenSet(
        access_token=credentials.token,
        refresh_token=credentials.refresh_token or "",
        expires_at=ensure_utc(credentials.expiry),
    )


def get_valid_access_token(session: Session, resource_id: str) -> CalendarAccess:
    """
    Return a usable access token for a resource, refreshing it if needed.

    The token is refreshed when it is missing or expires within 60 seconds
    and a refresh token is stored. The rotation is persisted before the
    credential is returned.

    Raises:
        CredentialsNotFound: No record, or nothing readable in it.
        RefreshFailed: Google rejected the refresh, or the access token
            expired with no refresh token to renew it.
        ExternalServiceError: The token endpoint could not be reached.
    """
    record = _load_record(session, resource_id)
    if record is None:
        raise CredentialsNotFound(f"No Google credentials stored for resource {resource_id}")

    access_token = decrypt_secret(record.access_token)
    refresh_token = decrypt_secret(record.refresh_token)

    if _needs_refresh(access_token, record.expires_at):
        if not refresh_token:
            if not access_token:
                raise CredentialsNotFound(
                    f"Stored Google credentials for resource {resource_id} are unusable"
                )
            raise RefreshFailed(f"Access token for resource {resource_id} expired")

        with _lock_for(resource_id):
            # Another request may have rotated the token while we waited
            session.refresh(record)
            access_token = decrypt_secret(record.access_token)
            refresh_token = decrypt_secret(record.refresh_token) or refresh_token

            if _needs_refresh(access_token, record.expires_at):
                refreshed = exchange_refresh_token(refresh_token)
                stored = store_tokens(
                    session,
                    resource_id,
                    TokenSet(
                        access_token=refreshed.access_token,
                        refresh_token=refreshed.refresh_token or refresh_token,
                        expires_at=refreshed.expires_at or record.expires_at,
                        scope=record.scope,
                    ),
                )
                access_token, refresh_token = stored.access_token, stored.refresh_token
                logger.info(f"Refreshed Google access token for resource {resource_id}")

    return CalendarAccess(
        access_token=access_token,
        refresh_token=refresh_token,
        calendar=client.build_calendar_service(access_token),
    )


def build_authorization_url(state: str) -> str:
    """Google consent URL for an offline, always-prompted calendar grant."""
    flow = client.build_flow()
    url, _ = flow.authorization_url(access_type="offline", prompt="consent", state=state)
    return url


def exchange_code(code: str) -> TokenSet:
    """Exchange an authorization code from the OAuth callback for tokens."""
    flow = client.build_flow()
    try:
        flow.fetch_token(code=code)
    except OAuth2Error as e:
        raise RefreshFailed(f"Google rejected the authorization code: {e}") from e
    credentials = flow.credentials
    return TokenSet(
        access_token=credentials.token or "",
        refresh_token=credentials.refresh_token or "",
        expires_at=ensure_utc(credentials.expiry),
        scope=" ".join(credentials.scopes or []) or None,
    )


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _sign(base: str) -> str:
    secret = settings.token_secret
    if not secret:
        raise ValueError("GOOGLE_TOKEN_SECRET is not configured")
    return hmac.new(secret.encode("utf-8"), base.encode("utf-8"), hashlib.sha256).hexdigest()


def build_signed_state(payload: dict) -> str:
    """Sign an OAuth state payload. A ``ts`` (epoch ms) is embedded if absent."""
    body = dict(payload)
    body.setdefault("ts", int(time.time() * 1000))
    base = _b64url_encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
    return f"{base}.{_sign(base)}"


def verify_signed_state(token: str | None, now: float | None = None) -> dict | None:
    """
    Verify a state token produced by ``build_signed_state``.

    Args:
        token: The ``state`` query parameter echoed back by Google.
        now: Current time in epoch seconds (defaults to the wall clock).

    Returns:
        The payload, or None if the token is malformed, its signature does
        not match, or it is older than ten minutes.

    Raises:
        ValueError: No signing secret is configured.
    """
    if not token or token.count(".") != 1:
        return None
    base, signature = token.split(".")
    if not hmac.compare_digest(_sign(base).encode("utf-8"), signature.encode("utf-8")):
        return None

    try:
        payload = json.loads(_b64url_decode(base))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    ts = payload.get("ts")
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return None
    now_ms = (time.time() if now is None else now) * 1000
    if now_ms - ts > STATE_TTL_SECONDS * 1000:
        return None
    return payload
