"""Status rules for schedule events.

::

    pending_confirmation -> confirmed | declined
    confirmed | pending_confirmation -> reschedule_requested
    reschedule_requested -> rescheduled          (interval changed)
    rescheduled -> confirmed | pending_confirmation
    any -> cancelled                              (terminal)

``declined`` is re-evaluated like the other confirmation states whenever an
answer changes.
"""
from app.core.errors import InvalidTransition
from app.models import ConfirmStatus, EventStatus

REEVALUATED_STATUSES = {
    EventStatus.PENDING_CONFIRMATION,
    EventStatus.CONFIRMED,
    EventStatus.DECLINED,
    EventStatus.RESCHEDULED,
}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    EventStatus.PENDING_CONFIRMATION: {
        EventStatus.CONFIRMED,
        EventStatus.DECLINED,
        EventStatus.RESCHEDULE_REQUESTED,
        EventStatus.CANCELLED,
    },
    EventStatus.CONFIRMED: {
        EventStatus.PENDING_CONFIRMATION,
        EventStatus.DECLINED,
        EventStatus.RESCHEDULE_REQUESTED,
        EventStatus.CANCELLED,
    },
    EventStatus.DECLINED: {
        EventStatus.PENDING_CONFIRMATION,
        EventStatus.CONFIRMED,
        EventStatus.RESCHEDULE_REQUESTED,
        EventStatus.CANCELLED,
    },
    EventStatus.RESCHEDULE_REQUESTED: {
        EventStatus.RESCHEDULED,
        EventStatus.PENDING_CONFIRMATION,
        EventStatus.CONFIRMED,
        EventStatus.DECLINED,
        EventStatus.CANCELLED,
    },
    EventStatus.RESCHEDULED: {
        EventStatus.PENDING_CONFIRMATION,
        EventStatus.CONFIRMED,
        EventStatus.DECLINED,
        EventStatus.RESCHEDULE_REQUESTED,
        EventStatus.CANCELLED,
    },
    EventStatus.CANCELLED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, set())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move an event from {current} to {target}")


def aggregate_status(consultant_status: str, attendee_statuses: list[str]) -> EventStatus:
    """
    Event status derived from confirmation answers.

    The consultant declining, or every clinic declining, declines the event.
    Every clinic confirming confirms it. Anything else is still pending.
    """
    if consultant_status == ConfirmStatus.DECLINED:
        return EventStatus.DECLINED
    if attendee_statuses and all(s == ConfirmStatus.DECLINED for s in attendee_statuses):
        return EventStatus.DECLINED
    if attendee_statuses and all(s == ConfirmStatus.CONFIRMED for s in attendee_statuses):
        return EventStatus.CONFIRMED
    return EventStatus.PENDING_CONFIRMATION


def status_after_update(current: str, interval_changed: bool, force_status: str | None = None) -> str:
    """Status an event ends up in after an edit."""
    if force_status is not None:
        ensure_transition(current, force_status)
        return force_status
    if current == EventStatus.RESCHEDULE_REQUESTED and interval_changed:
        return EventStatus.RESCHEDULED
    return current
