import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..auth.security import get_current_user
from ..schemas.notifications import MarkAllReadOut, NotificationListOut, NotificationOut
from ..services.notifications import list_notifications, mark_all_read, mark_read, unread_count

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListOut)
def get_notifications(
    limit: Optional[int] = 50,
    offset: Optional[int] = 0,
    unread_only: Optional[bool] = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """In-app notifications for the current user, newest first."""
    items = list_notifications(db, user, unread_only=bool(unread_only), limit=min(limit or 50, 200), offset=offset or 0)
    return NotificationListOut(
        items=[NotificationOut.model_validate(n) for n in items],
        unread_count=unread_count(db, user),
    )


@router.post("/read-all", response_model=MarkAllReadOut)
def read_all_notifications(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return MarkAllReadOut(updated=mark_all_read(db, user))


@router.post("/{notification_id}/read", response_model=NotificationOut)
def read_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        notif_uuid = uuid.UUID(notification_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Notification not found")
    notification = mark_read(db, user, notif_uuid)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return NotificationOut.model_validate(notification)
