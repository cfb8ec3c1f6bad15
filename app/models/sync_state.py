"""Incremental sync cursor and push channel metadata per synced calendar."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models.types import UTCDateTime


class SyncState(SQLModel, table=True):
    """Where the last import for a (resource, calendar) pair left off.

    ``sync_token``, ``channel_id`` and ``channel_resource_id`` are opaque
    values issued by Google. They are stored and replayed verbatim.

    Attributes:
        resource_id: Resource owning the calendar.
        calendar_id: Google calendar id.
        sync_token: ``nextSyncToken`` of the last completed cycle, or None
            when the next cycle must be a full sync.
        channel_id: Id of the active ``events.watch`` channel.
        channel_resource_id: Google's resource id for that channel.
        channel_expiration: When Google stops delivering notifications.
        last_synced_at: When a cycle last committed.
    """
    __table_args__ = (UniqueConstraint("resource_id", "calendar_id"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    resource_id: str = Field(index=True)
    calendar_id: str
    sync_token: str | None = None
    channel_id: str | None = Field(default=None, index=True)
    channel_resource_id: str | None = None
    channel_expiration: datetime | None = Field(default=None, sa_type=UTCDateTime)
    last_synced_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
