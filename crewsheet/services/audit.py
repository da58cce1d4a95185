"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def compute_integrity_hash(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: Optional[str],
    actor_role: Optional[str],
    source: Optional[str],
    timestamp_utc: datetime,
    changes_json: Optional[Dict],
    context: Optional[Dict],
    secret: str,
) -> str:
    canonical_data = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": timestamp_utc.isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # Drop None values and sort keys so the hash is stable
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Append an audit log entry to the current unit of work.

    The entry is flushed, not committed: it becomes durable together with the
    change it describes, or not at all.

    Args:
        db: Database session
        entity_type: Type of entity (timesheet|shift)
        entity_id: Entity ID
        action: Action performed (FINALIZE|CLIENT_APPROVE|MANAGER_APPROVE|REJECT|RESUBMIT)
        actor_id: User ID who performed the action
        actor_role: Role of the actor at the time of the action
        source: Source of the action (api|system)
        changes_json: Before/after diff
        context: Additional context (shift_id, reason, signature_id, ...)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_INTEGRITY_SECRET, then JWT_SECRET)

    Returns:
        Created AuditLog object
    """
    timestamp_utc = datetime.now(timezone.utc)

    if integrity_secret is None:
        integrity_secret = settings.audit_integrity_secret or settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = compute_integrity_hash(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            actor_id=str(actor_id) if actor_id else None,
            actor_role=actor_role,
            source=source or "system",
            timestamp_utc=timestamp_utc,
            changes_json=changes_json,
            context=context,
            secret=integrity_secret,
        )

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "system",
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    db.flush()

    return audit_log


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id=None,
    limit: int = 100,
    offset: int = 0,
    oldest_first: bool = False,
) -> list:
    """
    Get audit logs with optional filtering.

    Args:
        db: Database session
        entity_type: Filter by entity type
        entity_id: Filter by entity ID
        limit: Maximum number of results
        offset: Offset for pagination
        oldest_first: Chronological order instead of newest first

    Returns:
        List of AuditLog objects
    """
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    if oldest_first:
        query = query.order_by(AuditLog.timestamp_utc.asc())
    else:
        query = query.order_by(AuditLog.timestamp_utc.desc())
    query = query.limit(limit).offset(offset)

    return query.all()
