"""
Shift synchronization.
A completed timesheet drives its shift to Completed; nothing else may.
"""
from datetime import datetime, timezone

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import InvalidTransition, NotFound
from ..models.models import Shift, ShiftStatus, Timesheet, TimesheetStatus

logger = structlog.get_logger(__name__)


def sync_shift_from_timesheet(db: Session, timesheet: Timesheet) -> Shift:
    """
    Mark the timesheet's shift Completed inside the caller's unit of work.

    Only a timesheet already moved to ``completed`` may drive this.
    """
    if timesheet.status != TimesheetStatus.COMPLETED.value:
        raise InvalidTransition(
            f"shift can only be completed by a completed timesheet (timesheet is {timesheet.status})"
        )

    result = db.execute(
        update(Shift)
        .where(Shift.id == timesheet.shift_id)
        .values(status=ShiftStatus.COMPLETED.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound(f"shift {timesheet.shift_id} not found")

    shift = db.get(Shift, timesheet.shift_id)
    db.refresh(shift)
    logger.info("shift_synced", shift_id=str(shift.id), timesheet_id=str(timesheet.id), status=shift.status)
    return shift
