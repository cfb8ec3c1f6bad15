"""Persistence for sync cursors and push channel metadata.

One ``SyncState`` row exists per (resource, calendar). Functions here do
not commit; the importer commits the cursor together with the data it
imported, so a cursor is never stored without the page it came from.
"""
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlmodel import Session, select

from app.models import SyncState
from app.models.types import ensure_utc


@dataclass
class ChannelMeta:
    """A Google ``events.watch`` subscription."""
    channel_id: str | None
    resource_id: str | None
    expiration: datetime | None

    @classmethod
    def from_watch_response(cls, response: dict) -> "ChannelMeta":
        """Build from Google's watch response (expiration is epoch ms as a string)."""
        expiration = response.get("expiration")
        return cls(
            channel_id=response.get("id"),
            resource_id=response.get("resourceId"),
            expiration=(
                datetime.fromtimestamp(int(expiration) / 1000, tz=UTC) if expiration else None
            ),
        )


def get_state(session: Session, resource_id: str, calendar_id: str | None = None) -> SyncState | None:
    """Sync state for a resource, optionally narrowed to one calendar."""
    statement = select(SyncState).where(SyncState.resource_id == resource_id)
    if calendar_id is not None:
        statement = statement.where(SyncState.calendar_id == calendar_id)
    return session.exec(statement).first()


def list_states(session: Session, resource_id: str | None = None) -> list[SyncState]:
    statement = select(SyncState)
    if resource_id is not None:
        statement = statement.where(SyncState.resource_id == resource_id)
    return list(session.exec(statement).all())


def load_cursor(session: Session, resource_id: str, calendar_id: str) -> str | None:
    state = get_state(session, resource_id, calendar_id)
    return state.sync_token if state else None


def commit_cursor(
    session: Session,
    resource_id: str,
    calendar_id: str,
    cursor: str | None = None,
    channel: ChannelMeta | None = None,
) -> SyncState:
    """
    Upsert the sync state for a (resource, calendar) pair.

    A None ``cursor`` leaves the stored cursor untouched (use
    ``clear_cursor`` to drop it). Channel fields are replaced only when a
    ``channel`` is given. Calling it twice with the same values is a no-op.
    """
    state = get_state(session, resource_id, calendar_id)
    if state is None:
        state = SyncState(resource_id=resource_id, calendar_id=calendar_id)

    if cursor is not None:
        state.sync_token = cursor
        state.last_synced_at = datetime.now(UTC)
    if channel is not None:
        state.channel_id = channel.channel_id
        state.channel_resource_id = channel.resource_id
        state.channel_expiration = ensure_utc(channel.expiration)

    session.add(state)
    return state


def clear_cursor(session: Session, resource_id: str, calendar_id: str) -> None:
    """Drop the cursor so the next cycle performs a full sync."""
    state = get_state(session, resource_id, calendar_id)
    if state is not None:
        state.sync_token = None
        session.add(state)


def list_expiring_channels(session: Session, before: datetime) -> list[SyncState]:
    """Sync states whose watch channel expires before ``before``."""
    statement = (
        select(SyncState)
        .where(SyncState.channel_expiration.is_not(None))
        .where(SyncState.channel_expiration < ensure_utc(before))
    )
    return list(session.exec(statement).all())


def find_by_channel_id(session: Session, channel_id: str) -> SyncState | None:
    statement = select(SyncState).where(SyncState.channel_id == channel_id)
    return session.exec(statement).first()
