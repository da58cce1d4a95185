import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


ACTION_FINALIZE = "finalize"
ACTION_CLIENT_APPROVE = "client_approve"
ACTION_MANAGER_APPROVE = "manager_approve"
ACTION_REJECT = "reject"
ACTION_RESUBMIT = "resubmit"


@dataclass(frozen=True)
class TransitionEvent:
    """Emitted after a timesheet transition commits."""
    action: str
    timesheet_id: uuid.UUID
    shift_id: uuid.UUID
    actor_id: uuid.UUID
    from_status: Optional[str]
    to_status: str
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
