from app.models.attendee import Attendee
from app.models.change_request import ChangeRequest, ChangeRequestStatus
from app.models.event import CalendarEntry, ConfirmStatus, EventStatus, ScheduleEvent
from app.models.external_block import ExternalBlock
from app.models.oauth import OAuthToken
from app.models.resource import ClinicMembership, Resource
from app.models.sync_state import SyncState

__all__ = [
    "Attendee",
    "CalendarEntry",
    "ChangeRequest",
    "ChangeRequestStatus",
    "ClinicMembership",
    "ConfirmStatus",
    "EventStatus",
    "ExternalBlock",
    "OAuthToken",
    "Resource",
    "ScheduleEvent",
    "SyncState",
]
