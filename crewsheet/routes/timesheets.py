from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..auth.security import get_current_user
from ..schemas.timesheets import (
    AuditEntryOut, ClientApproveRequest, ManagerApproveRequest, RejectRequest,
    TimesheetOut, TimesheetSummaryOut,
)
from ..services import timesheet_machine as machine
from ..services.notifications import NotificationDispatcher, dispatcher
from ..services.projections import (
    get_history, get_timesheet, get_timesheet_pdf, list_pending, to_timesheet_out,
)

router = APIRouter(tags=["timesheets"])


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher


def _emitter(background_tasks: BackgroundTasks, notifier: NotificationDispatcher):
    # Runs after the response is sent, in its own session
    return lambda event: background_tasks.add_task(notifier, event)


@router.post("/shifts/{shift_id}/finalize", response_model=TimesheetOut, status_code=201)
def finalize_shift(
    shift_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    """Crew chief or manager submits the shift's hours for client approval."""
    ts = machine.finalize(db, shift_id, user, emit=_emitter(background_tasks, notifier))
    return to_timesheet_out(db, ts)


@router.post("/timesheets/{timesheet_id}/client-approve", response_model=TimesheetOut)
def client_approve_timesheet(
    timesheet_id: str,
    payload: ClientApproveRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    ts = machine.client_approve(
        db, timesheet_id, user, payload.signature,
        justification=payload.justification,
        emit=_emitter(background_tasks, notifier),
    )
    return to_timesheet_out(db, ts)


@router.post("/timesheets/{timesheet_id}/manager-approve", response_model=TimesheetOut)
def manager_approve_timesheet(
    timesheet_id: str,
    payload: ManagerApproveRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    ts = machine.manager_approve(db, timesheet_id, user, payload.signature, emit=_emitter(background_tasks, notifier))
    return to_timesheet_out(db, ts)


@router.post("/timesheets/{timesheet_id}/reject", response_model=TimesheetOut)
def reject_timesheet(
    timesheet_id: str,
    payload: RejectRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    ts = machine.reject(db, timesheet_id, user, payload.reason, emit=_emitter(background_tasks, notifier))
    return to_timesheet_out(db, ts)


@router.post("/timesheets/{timesheet_id}/resubmit", response_model=TimesheetOut)
def resubmit_timesheet(
    timesheet_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    notifier: NotificationDispatcher = Depends(get_dispatcher),
):
    ts = machine.resubmit(db, timesheet_id, user, emit=_emitter(background_tasks, notifier))
    return to_timesheet_out(db, ts)


@router.get("/timesheets/pending", response_model=List[TimesheetSummaryOut])
def pending_timesheets(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Timesheets waiting on the current user's approval."""
    return list_pending(db, user)


@router.get("/timesheets/{timesheet_id}", response_model=TimesheetOut)
def read_timesheet(
    timesheet_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return get_timesheet(db, timesheet_id, user)


@router.get("/timesheets/{timesheet_id}/history", response_model=List[AuditEntryOut])
def timesheet_history(
    timesheet_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return get_history(db, timesheet_id, user)


@router.get("/timesheets/{timesheet_id}/pdf")
def download_timesheet_pdf(
    timesheet_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    artifact = get_timesheet_pdf(db, timesheet_id, user)
    return Response(
        content=artifact.data,
        media_type=artifact.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Checksum-SHA256": artifact.checksum_sha256,
        },
    )
