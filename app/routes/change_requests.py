"""Change request routes used by admins to handle reschedule proposals."""
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session

from app.calendar.export import ExportAction, run_export
from app.core.database import get_session
from app.models import ChangeRequestStatus
from app.models.change_request import ChangeRequestRead, ChangeRequestResolve
from app.scheduling import service

router = APIRouter(prefix="/change-requests", tags=["change-requests"])


@router.get("", response_model=list[ChangeRequestRead])
async def list_change_requests(
    status: str = ChangeRequestStatus.OPEN,
    event_id: UUID | None = None,
    clinic_id: str | None = None,
    session: Session = Depends(get_session),
):
    """List change requests, newest first. ``status=all`` lists every status."""
    requests = service.list_change_requests(
        session,
        status=None if status == "all" else status,
        event_id=event_id,
        clinic_id=clinic_id,
    )
    return [ChangeRequestRead(**request.model_dump()) for request in requests]


@router.post("/{request_id}/resolve", response_model=ChangeRequestRead)
def resolve_change_request(
    request_id: UUID,
    payload: ChangeRequestResolve,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    Accept or reject a change request.

    Accepting moves the event to the given (or suggested) interval and
    mirrors the move to Google Calendar.
    """
    request = service.resolve_change_request(
        session,
        request_id,
        payload.outcome,
        payload.handled_by,
        start=payload.start_at,
        end=payload.end_at,
    )
    if request.status == ChangeRequestStatus.ACCEPTED:
        background_tasks.add_task(run_export, request.event_id, ExportAction.UPDATE)
    return ChangeRequestRead(**request.model_dump())
