import uuid
from datetime import datetime
from typing import Optional, List

from pydantic import AliasChoices, BaseModel, Field


class NotificationOut(BaseModel):
    id: uuid.UUID
    type: str
    title: str
    message: str
    is_read: bool = False
    related_timesheet_id: Optional[uuid.UUID] = None
    related_shift_id: Optional[uuid.UUID] = None
    payload: Optional[dict] = Field(default=None, validation_alias=AliasChoices("payload_json", "payload"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationListOut(BaseModel):
    items: List[NotificationOut]
    unread_count: int


class MarkAllReadOut(BaseModel):
    updated: int
