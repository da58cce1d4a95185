"""
Timesheet state machine.

The TRANSITIONS table is the only thing allowed to move a timesheet's status. Every
transition is a single conditional update guarded by the expected current status;
losing that race raises StaleStateError and nothing else in the unit of work survives.

Checks run in a fixed order: existence, legality from the current status, actor
permission, then payload validation.
"""
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple, Union

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import unit_of_work
from ..errors import (
    ConflictError, InvalidTransition, NotFound, PermissionDenied, StaleStateError, ValidationError,
)
from ..models.models import (
    AssignedPersonnel, Shift, ShiftStatus, Timesheet, TimesheetStatus, User,
    ACTIVE_TIMESHEET_STATUSES, CLOCK_CLOCKED_IN,
)
from .audit import create_audit_log
from .documents import ensure_pdf_artifact
from .events import (
    TransitionEvent,
    ACTION_FINALIZE, ACTION_CLIENT_APPROVE, ACTION_MANAGER_APPROVE, ACTION_REJECT, ACTION_RESUBMIT,
)
from .permissions import (
    can_client_approve, can_finalize, can_manager_approve, can_reject, can_resubmit, get_user_role,
)
from .shift_sync import sync_shift_from_timesheet
from .signatures import APPROVAL_CLIENT, APPROVAL_MANAGER, capture_signature, decode_signature_payload
from .time_rules import MalformedTimeEntry, validate_entries

logger = structlog.get_logger(__name__)

Emitter = Callable[[TransitionEvent], object]

PENDING_CLIENT = TimesheetStatus.PENDING_CLIENT_APPROVAL
PENDING_FINAL = TimesheetStatus.PENDING_FINAL_APPROVAL
COMPLETED = TimesheetStatus.COMPLETED
REJECTED = TimesheetStatus.REJECTED

# (current status, action) -> next status; None is the implicit draft state
TRANSITIONS: Dict[Tuple[Optional[TimesheetStatus], str], TimesheetStatus] = {
    (None, ACTION_FINALIZE): PENDING_CLIENT,
    (PENDING_CLIENT, ACTION_CLIENT_APPROVE): PENDING_FINAL,
    (PENDING_CLIENT, ACTION_REJECT): REJECTED,
    (PENDING_FINAL, ACTION_MANAGER_APPROVE): COMPLETED,
    (PENDING_FINAL, ACTION_REJECT): REJECTED,
    (REJECTED, ACTION_RESUBMIT): PENDING_CLIENT,
}

AUDIT_ACTIONS = {
    ACTION_FINALIZE: "FINALIZE",
    ACTION_CLIENT_APPROVE: "CLIENT_APPROVE",
    ACTION_MANAGER_APPROVE: "MANAGER_APPROVE",
    ACTION_REJECT: "REJECT",
    ACTION_RESUBMIT: "RESUBMIT",
}


def next_status(current: Optional[str], action: str) -> TimesheetStatus:
    """Look up the transition table; anything not in it is an InvalidTransition."""
    state = TimesheetStatus(current) if current is not None else None
    target = TRANSITIONS.get((state, action))
    if target is None:
        label = state.value if state is not None else TimesheetStatus.DRAFT.value
        raise InvalidTransition(f"cannot {action.replace('_', ' ')} a timesheet that is {label}")
    return target


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_id(raw, label: str) -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        raise NotFound(f"{label} {raw} not found")


def load_timesheet(db: Session, timesheet_id) -> Timesheet:
    ts = db.get(Timesheet, _parse_id(timesheet_id, "timesheet"))
    if ts is None:
        raise NotFound(f"timesheet {timesheet_id} not found")
    return ts


def _other_timesheet(db: Session, shift_id, statuses, exclude_id=None) -> Optional[Timesheet]:
    query = db.query(Timesheet).filter(Timesheet.shift_id == shift_id, Timesheet.status.in_(statuses))
    if exclude_id is not None:
        query = query.filter(Timesheet.id != exclude_id)
    return query.first()


def _sign(db: Session, ts: Timesheet, actor: User, approval_type: str, image: Union[bytes, str, None],
          justification: Optional[str] = None):
    if isinstance(image, str):
        image = decode_signature_payload(image)
    try:
        return capture_signature(db, ts, actor, approval_type, image, justification)
    except ConflictError:
        # A concurrent approval of the same stage shows up first as a duplicate signature
        current = db.query(Timesheet.status).filter(Timesheet.id == ts.id).scalar()
        if current != ts.status:
            raise StaleStateError(f"timesheet {ts.id} is no longer {ts.status}; it was just updated by someone else")
        raise


def _apply(db: Session, ts: Timesheet, expected: str, target: TimesheetStatus, **values) -> None:
    """Compare-and-set the status; zero affected rows means another actor got there first."""
    result = db.execute(
        update(Timesheet)
        .where(Timesheet.id == ts.id, Timesheet.status == expected)
        .values(status=target.value, version=Timesheet.version + 1, updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(
            f"timesheet {ts.id} is no longer {expected}; it was just updated by someone else"
        )
    db.refresh(ts)


def _audit(db: Session, ts: Timesheet, action: str, actor: User, before: Optional[str], context: Dict) -> None:
    create_audit_log(
        db=db,
        entity_type="timesheet",
        entity_id=ts.id,
        action=AUDIT_ACTIONS[action],
        actor_id=actor.id,
        actor_role=get_user_role(actor),
        source="api",
        changes_json={"before": {"status": before}, "after": {"status": ts.status}},
        context={"shift_id": str(ts.shift_id), "version": ts.version, "cycle": ts.cycle, **context},
    )


def _committed(ts: Timesheet, action: str, actor: User, before: Optional[str], emit: Optional[Emitter],
               reason: Optional[str] = None) -> Timesheet:
    logger.info(
        "timesheet_transition",
        timesheet_id=str(ts.id),
        shift_id=str(ts.shift_id),
        action=action,
        from_status=before,
        to_status=ts.status,
        actor_id=str(actor.id),
        version=ts.version,
    )
    if emit is not None:
        event = TransitionEvent(
            action=action,
            timesheet_id=ts.id,
            shift_id=ts.shift_id,
            actor_id=actor.id,
            from_status=before,
            to_status=ts.status,
            reason=reason,
        )
        try:
            emit(event)
        except Exception as e:
            logger.warning("transition_event_emit_failed", timesheet_id=str(ts.id), action=action, error=str(e))
    return ts


def finalize(db: Session, shift_id, actor: User, emit: Optional[Emitter] = None) -> Timesheet:
    """Create the shift's timesheet in pending_client_approval."""
    shift = db.get(Shift, _parse_id(shift_id, "shift"))
    if shift is None:
        raise NotFound(f"shift {shift_id} not found")
    target = next_status(None, ACTION_FINALIZE)
    if shift.status == ShiftStatus.CANCELLED.value:
        raise InvalidTransition("cannot finalize a cancelled shift")
    if not can_finalize(actor, shift):
        raise PermissionDenied("only the shift's crew chief or a manager can finalize")
    if _other_timesheet(db, shift.id, ACTIVE_TIMESHEET_STATUSES) is not None:
        raise ConflictError("an active timesheet already exists for this shift")
    if _other_timesheet(db, shift.id, (COMPLETED.value,)) is not None:
        raise ConflictError("this shift already has a completed timesheet")
    still_clocked_in = db.query(AssignedPersonnel).filter(
        AssignedPersonnel.shift_id == shift.id,
        AssignedPersonnel.status == CLOCK_CLOCKED_IN,
    ).count()
    if still_clocked_in:
        raise ValidationError(
            f"cannot finalize: {still_clocked_in} worker(s) have not ended their shift", field="shift"
        )
    for assignment in shift.personnel:
        try:
            validate_entries(assignment.time_entries)
        except MalformedTimeEntry as e:
            raise ValidationError(
                f"cannot finalize: malformed time entries for assignment {assignment.id}: {e}", field="time_entries"
            ) from e

    with unit_of_work(db):
        now = _now()
        ts = Timesheet(
            shift_id=shift.id,
            status=target.value,
            version=1,
            cycle=1,
            submitted_by=actor.id,
            submitted_at=now,
            updated_at=now,
        )
        db.add(ts)
        try:
            db.flush()
        except IntegrityError as e:
            raise ConflictError("an active timesheet already exists for this shift") from e
        _audit(db, ts, ACTION_FINALIZE, actor, None, {})

    return _committed(ts, ACTION_FINALIZE, actor, None, emit)


def client_approve(
    db: Session,
    timesheet_id,
    actor: User,
    signature_image: Union[bytes, str, None],
    justification: Optional[str] = None,
    emit: Optional[Emitter] = None,
) -> Timesheet:
    """Record the client's signature and move to pending_final_approval."""
    ts = load_timesheet(db, timesheet_id)
    before = ts.status
    target = next_status(before, ACTION_CLIENT_APPROVE)
    if not can_client_approve(actor, ts.shift):
        raise PermissionDenied("not allowed to approve on behalf of this client")

    with unit_of_work(db):
        attestation = _sign(db, ts, actor, APPROVAL_CLIENT, signature_image, justification)
        _apply(
            db, ts, before, target,
            client_approved_by=actor.id,
            client_approved_at=attestation.captured_at,
            client_signature_id=attestation.id,
        )
        _audit(db, ts, ACTION_CLIENT_APPROVE, actor, before, {
            "signature_id": str(attestation.id),
            "override": bool(attestation.is_override),
            "justification": attestation.justification,
        })

    return _committed(ts, ACTION_CLIENT_APPROVE, actor, before, emit)


def manager_approve(
    db: Session,
    timesheet_id,
    actor: User,
    signature_image: Union[bytes, str, None],
    emit: Optional[Emitter] = None,
) -> Timesheet:
    """
    Final approval. Status change, manager signature, PDF artifact and shift
    synchronization commit together or not at all.
    """
    ts = load_timesheet(db, timesheet_id)
    before = ts.status
    target = next_status(before, ACTION_MANAGER_APPROVE)
    if not can_manager_approve(actor):
        raise PermissionDenied("only managers can give final approval")

    with unit_of_work(db):
        attestation = _sign(db, ts, actor, APPROVAL_MANAGER, signature_image)
        _apply(
            db, ts, before, target,
            manager_approved_by=actor.id,
            manager_approved_at=attestation.captured_at,
            manager_signature_id=attestation.id,
        )
        artifact = ensure_pdf_artifact(db, ts)
        shift = sync_shift_from_timesheet(db, ts)
        _audit(db, ts, ACTION_MANAGER_APPROVE, actor, before, {
            "signature_id": str(attestation.id),
            "pdf_artifact_id": str(artifact.id),
            "pdf_checksum_sha256": artifact.checksum_sha256,
            "shift_status": shift.status,
        })

    return _committed(ts, ACTION_MANAGER_APPROVE, actor, before, emit)


def reject(db: Session, timesheet_id, actor: User, reason: Optional[str], emit: Optional[Emitter] = None) -> Timesheet:
    ts = load_timesheet(db, timesheet_id)
    before = ts.status
    target = next_status(before, ACTION_REJECT)
    if not can_reject(actor, ts):
        raise PermissionDenied("not allowed to reject this timesheet at its current stage")
    reason = (reason or "").strip()
    if len(reason) < max(settings.require_reason_min_chars, 1):
        raise ValidationError("rejection reason is required", field="reason")

    with unit_of_work(db):
        _apply(
            db, ts, before, target,
            rejection_reason=reason,
            rejected_by=actor.id,
            rejected_at=_now(),
        )
        _audit(db, ts, ACTION_REJECT, actor, before, {"reason": reason, "stage": before})

    return _committed(ts, ACTION_REJECT, actor, before, emit, reason=reason)


def resubmit(db: Session, timesheet_id, actor: User, emit: Optional[Emitter] = None) -> Timesheet:
    """
    Start a new approval cycle. Approvals and signature references from the rejected
    cycle are cleared; the attestations themselves and the last rejection stay on record.
    """
    ts = load_timesheet(db, timesheet_id)
    before = ts.status
    target = next_status(before, ACTION_RESUBMIT)
    if not can_resubmit(actor, ts.shift):
        raise PermissionDenied("only the shift's crew chief or a manager can resubmit")
    if _other_timesheet(db, ts.shift_id, ACTIVE_TIMESHEET_STATUSES + (COMPLETED.value,), exclude_id=ts.id):
        raise ConflictError("another timesheet for this shift is already active or completed")

    with unit_of_work(db):
        try:
            _apply(
                db, ts, before, target,
                cycle=Timesheet.cycle + 1,
                submitted_by=actor.id,
                submitted_at=_now(),
                client_approved_by=None,
                client_approved_at=None,
                client_signature_id=None,
                manager_approved_by=None,
                manager_approved_at=None,
                manager_signature_id=None,
            )
        except IntegrityError as e:
            raise ConflictError("an active timesheet already exists for this shift") from e
        _audit(db, ts, ACTION_RESUBMIT, actor, before, {
            "previous_rejection_reason": ts.rejection_reason,
            "previous_rejected_by": str(ts.rejected_by) if ts.rejected_by else None,
        })

    return _committed(ts, ACTION_RESUBMIT, actor, before, emit)
