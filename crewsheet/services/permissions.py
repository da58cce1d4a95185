"""
Permission checks for timesheet operations.
"""
from ..models.models import (
    User, Shift, Timesheet, TimesheetStatus,
    ROLE_MANAGER, ROLE_CREW_CHIEF, ROLE_CLIENT,
)


def is_manager(user: User) -> bool:
    return user.role == ROLE_MANAGER


def is_shift_crew_chief(user: User, shift: Shift) -> bool:
    """Crew chief role AND assigned as the shift's crew chief."""
    return (
        user.role == ROLE_CREW_CHIEF
        and shift.crew_chief_id is not None
        and str(shift.crew_chief_id) == str(user.id)
    )


def is_shift_client(user: User, shift: Shift) -> bool:
    """Client user whose company owns the shift's job."""
    if user.role != ROLE_CLIENT or not user.client_company_id:
        return False
    job = shift.job
    return job is not None and str(job.client_id) == str(user.client_company_id)


def get_user_role(user: User) -> str:
    return user.role or "user"


def can_finalize(user: User, shift: Shift) -> bool:
    return is_manager(user) or is_shift_crew_chief(user, shift)


def can_resubmit(user: User, shift: Shift) -> bool:
    return is_manager(user) or is_shift_crew_chief(user, shift)


def can_client_approve(user: User, shift: Shift) -> bool:
    """
    Client users of the job's company sign as the client.
    The shift's crew chief and managers may sign on the client's behalf (override).
    """
    return is_shift_client(user, shift) or is_shift_crew_chief(user, shift) or is_manager(user)


def is_client_override(user: User, shift: Shift) -> bool:
    return not is_shift_client(user, shift) and can_client_approve(user, shift)


def can_manager_approve(user: User) -> bool:
    return is_manager(user)


def can_reject(user: User, timesheet: Timesheet) -> bool:
    """Rejection follows whoever may approve the current stage."""
    if timesheet.status == TimesheetStatus.PENDING_CLIENT_APPROVAL.value:
        return can_client_approve(user, timesheet.shift)
    if timesheet.status == TimesheetStatus.PENDING_FINAL_APPROVAL.value:
        return is_manager(user)
    return False


def can_view_timesheet(user: User, timesheet: Timesheet) -> bool:
    shift = timesheet.shift
    return is_manager(user) or is_shift_crew_chief(user, shift) or is_shift_client(user, shift)
