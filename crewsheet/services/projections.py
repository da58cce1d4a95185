"""
Read side of the timesheet engine: typed projections and queries.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import InvalidTransition, NotFound, PermissionDenied
from ..models.models import (
    Job, PDFArtifact, Shift, SignatureAttestation, Timesheet, TimesheetStatus, User,
    ROLE_CLIENT, ROLE_CREW_CHIEF, ROLE_MANAGER,
)
from ..schemas.timesheets import (
    AuditEntryOut, PdfMetaOut, PersonnelOut, RejectionOut, ShiftOut, SignatureOut,
    TimeEntryOut, TimesheetOut, TimesheetSummaryOut,
)
from .audit import get_audit_logs
from .documents import get_pdf_artifact
from .permissions import can_view_timesheet
from .time_rules import MalformedTimeEntry, entry_minutes, minutes_to_hours
from .timesheet_machine import load_timesheet


def _user_name(db: Session, user_id) -> Optional[str]:
    if not user_id:
        return None
    user = db.get(User, user_id)
    return user.name if user else None


def _signature(db: Session, attestation_id) -> Optional[SignatureOut]:
    if not attestation_id:
        return None
    attestation = db.get(SignatureAttestation, attestation_id)
    if attestation is None:
        return None
    out = SignatureOut.model_validate(attestation)
    out.signer_name = attestation.signer.name if attestation.signer else None
    return out


def _shift_out(shift: Shift) -> ShiftOut:
    job = shift.job
    return ShiftOut(
        id=shift.id,
        date=shift.date,
        start_time=shift.start_time,
        end_time=shift.end_time,
        location=shift.location,
        status=shift.status,
        job_id=job.id,
        job_name=job.name,
        po_number=job.po_number,
        client_id=job.client_id,
        client_name=job.client.company_name if job.client else "",
        crew_chief_id=shift.crew_chief_id,
        crew_chief_name=shift.crew_chief.name if shift.crew_chief else None,
    )


def _entry_out(entry) -> TimeEntryOut:
    out = TimeEntryOut(entry_number=entry.entry_number, clock_in=entry.clock_in, clock_out=entry.clock_out)
    try:
        out.minutes = entry_minutes(entry.clock_in, entry.clock_out)
    except MalformedTimeEntry:
        out.malformed = True
    return out


def _personnel_out(shift: Shift) -> List[PersonnelOut]:
    rows = []
    for assignment in shift.personnel:
        entries = [_entry_out(e) for e in assignment.time_entries]
        minutes = sum(e.minutes for e in entries)
        rows.append(PersonnelOut(
            id=assignment.id,
            employee_id=assignment.employee_id,
            employee_name=assignment.employee.name if assignment.employee else "Unknown",
            role_code=assignment.role_code,
            role_on_shift=assignment.role_on_shift,
            status=assignment.status,
            time_entries=entries,
            total_minutes=minutes,
            total_hours=minutes_to_hours(minutes),
        ))
    rows.sort(key=lambda p: (p.employee_name.lower(), str(p.id)))
    return rows


def to_timesheet_out(db: Session, ts: Timesheet) -> TimesheetOut:
    personnel = _personnel_out(ts.shift)
    last_rejection = None
    if ts.rejection_reason:
        last_rejection = RejectionOut(
            reason=ts.rejection_reason,
            rejected_by=ts.rejected_by,
            rejected_by_name=_user_name(db, ts.rejected_by),
            rejected_at=ts.rejected_at,
        )
    artifact = get_pdf_artifact(db, ts.id)
    return TimesheetOut(
        id=ts.id,
        status=ts.status,
        version=ts.version,
        cycle=ts.cycle,
        created_at=ts.created_at,
        updated_at=ts.updated_at,
        submitted_by=ts.submitted_by,
        submitted_at=ts.submitted_at,
        client_approved_by=ts.client_approved_by,
        client_approved_at=ts.client_approved_at,
        manager_approved_by=ts.manager_approved_by,
        manager_approved_at=ts.manager_approved_at,
        shift=_shift_out(ts.shift),
        personnel=personnel,
        total_hours=minutes_to_hours(sum(p.total_minutes for p in personnel)),
        client_signature=_signature(db, ts.client_signature_id),
        manager_signature=_signature(db, ts.manager_signature_id),
        last_rejection=last_rejection,
        pdf=PdfMetaOut.model_validate(artifact) if artifact else None,
    )


def _load_visible(db: Session, timesheet_id, actor: User) -> Timesheet:
    ts = load_timesheet(db, timesheet_id)
    if not can_view_timesheet(actor, ts):
        raise PermissionDenied("not allowed to view this timesheet")
    return ts


def get_timesheet(db: Session, timesheet_id, actor: User) -> TimesheetOut:
    return to_timesheet_out(db, _load_visible(db, timesheet_id, actor))


def get_timesheet_pdf(db: Session, timesheet_id, actor: User) -> PDFArtifact:
    """The finalized document; only a completed timesheet has one."""
    ts = _load_visible(db, timesheet_id, actor)
    if ts.status != TimesheetStatus.COMPLETED.value:
        raise InvalidTransition(f"timesheet is {ts.status}; the PDF exists only once it is completed")
    artifact = get_pdf_artifact(db, ts.id)
    if artifact is None:
        raise NotFound(f"PDF for timesheet {ts.id} not found")
    return artifact


def list_pending(db: Session, actor: User) -> List[TimesheetSummaryOut]:
    """
    Approval queue for the actor:
    - client users: their company's timesheets awaiting client approval
    - crew chiefs: pending timesheets on shifts they lead
    - managers: everything pending
    """
    query = db.query(Timesheet).join(Shift, Timesheet.shift_id == Shift.id).join(Job, Shift.job_id == Job.id)
    if actor.role == ROLE_MANAGER:
        query = query.filter(Timesheet.status.in_([
            TimesheetStatus.PENDING_CLIENT_APPROVAL.value,
            TimesheetStatus.PENDING_FINAL_APPROVAL.value,
        ]))
    elif actor.role == ROLE_CLIENT and actor.client_company_id:
        query = query.filter(
            Timesheet.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value,
            Job.client_id == actor.client_company_id,
        )
    elif actor.role == ROLE_CREW_CHIEF:
        query = query.filter(
            Timesheet.status.in_([
                TimesheetStatus.PENDING_CLIENT_APPROVAL.value,
                TimesheetStatus.PENDING_FINAL_APPROVAL.value,
            ]),
            Shift.crew_chief_id == actor.id,
        )
    else:
        return []

    rows = query.order_by(Timesheet.submitted_at.asc()).all()
    return [
        TimesheetSummaryOut(
            id=ts.id,
            status=ts.status,
            version=ts.version,
            shift_id=ts.shift_id,
            shift_date=ts.shift.date,
            job_name=ts.shift.job.name,
            client_name=ts.shift.job.client.company_name if ts.shift.job.client else "",
            submitted_at=ts.submitted_at,
            worker_count=len(ts.shift.personnel),
        )
        for ts in rows
    ]


def get_history(db: Session, timesheet_id, actor: User) -> List[AuditEntryOut]:
    ts = _load_visible(db, timesheet_id, actor)
    logs = get_audit_logs(db, entity_type="timesheet", entity_id=ts.id, limit=500, oldest_first=True)
    return [AuditEntryOut.model_validate(log) for log in logs]
