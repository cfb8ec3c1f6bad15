"""Error taxonomy for the scheduling and calendar sync subsystem.

Conflict and validation errors are raised to the caller for immediate
correction. Sync errors are caught and logged at the cycle boundary
(see ``app.calendar.sync``) so one resource never blocks the others.
"""


class SchedulingError(Exception):
    """Base class for all domain errors."""

    code = "scheduling_error"

    def __init__(self, message: str | None = None):
        self.message = message or (type(self).__doc__ or "").strip()
        super().__init__(self.message)


class CredentialsNotFound(SchedulingError):
    """No usable Google credentials are stored for this resource."""

    code = "reconnect_calendar"


class RefreshFailed(SchedulingError):
    """Google rejected the refresh token exchange."""

    code = "reconnect_calendar"


class CursorInvalidated(SchedulingError):
    """The stored sync token was rejected and a full resync is required."""

    code = "cursor_invalidated"


class SchedulingConflict(SchedulingError):
    """Time already taken."""

    code = "scheduling_conflict"


class SchedulingValidationError(SchedulingError):
    """The scheduling request is missing required data."""

    code = "validation_error"


class NotFoundError(SchedulingError):
    """The requested record does not exist."""

    code = "not_found"


class InvalidTransition(SchedulingError):
    """The event cannot move to the requested status."""

    code = "invalid_transition"


class ExternalServiceError(SchedulingError):
    """Google Calendar could not be reached or returned a server error."""

    code = "external_service_error"
