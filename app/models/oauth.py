"""OAuth token model for Google API authentication.

This module defines the OAuthToken model which stores OAuth2 credentials
for accessing the Google Calendar API on behalf of one scheduling resource.
Tokens are obtained through the OAuth redirect flow and rotated by the
credential vault (``app.calendar.vault``).
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from app.models.types import UTCDateTime, utcnow


class OAuthToken(SQLModel, table=True):
    """Stored OAuth2 credentials for Google Calendar API access.

    Secret fields only ever hold ciphertext produced by
    ``app.calendar.vault.encrypt_secret``. Plain tokens exist in memory for
    the duration of one Google call.

    Attributes:
        id: Unique identifier (UUID).
        resource_id: Resource this token belongs to (one record per resource).
        access_token: Encrypted short-lived token for API requests.
        refresh_token: Encrypted long-lived token used to obtain new access
            tokens when they expire.
        token_uri: Google's token endpoint URL.
        expires_at: When the access token expires, if known.
        scope: Space-separated list of granted OAuth scopes.
        updated_at: Last rotation time.
    """
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    resource_id: str = Field(index=True, unique=True)
    access_token: str = ""
    refresh_token: str = ""
    token_uri: str = "https://oauth2.googleapis.com/token"
    expires_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    scope: str | None = None
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
