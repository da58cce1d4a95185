import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional, List

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ClientApproveRequest(BaseModel):
    signature: str  # data URL or base64 image
    justification: Optional[str] = None

    @field_validator('justification', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ManagerApproveRequest(BaseModel):
    signature: str


class RejectRequest(BaseModel):
    reason: str = ""


class TimeEntryOut(BaseModel):
    entry_number: int
    clock_in: Optional[datetime] = None
    clock_out: Optional[datetime] = None
    minutes: int = 0
    malformed: bool = False  # clock_out earlier than clock_in; counted as zero


class PersonnelOut(BaseModel):
    id: uuid.UUID
    employee_id: uuid.UUID
    employee_name: str
    role_code: str
    role_on_shift: Optional[str] = None
    status: str
    time_entries: List[TimeEntryOut] = []
    total_minutes: int = 0
    total_hours: Decimal = Decimal("0.00")


class ShiftOut(BaseModel):
    id: uuid.UUID
    date: date
    start_time: time
    end_time: time
    location: Optional[str] = None
    status: str
    job_id: uuid.UUID
    job_name: str
    po_number: Optional[str] = None
    client_id: uuid.UUID
    client_name: str
    crew_chief_id: Optional[uuid.UUID] = None
    crew_chief_name: Optional[str] = None


class SignatureOut(BaseModel):
    """Attestation metadata; image bytes are never projected."""
    id: uuid.UUID
    approval_type: str
    signer_id: uuid.UUID
    signer_name: Optional[str] = None
    signer_role: str
    captured_at: datetime
    content_type: str
    size_bytes: int
    checksum_sha256: str
    is_override: bool = False
    justification: Optional[str] = None

    class Config:
        from_attributes = True


class RejectionOut(BaseModel):
    reason: str
    rejected_by: Optional[uuid.UUID] = None
    rejected_by_name: Optional[str] = None
    rejected_at: Optional[datetime] = None


class PdfMetaOut(BaseModel):
    id: uuid.UUID
    filename: str
    content_type: str
    size_bytes: int
    checksum_sha256: str
    timesheet_version: int
    generated_at: datetime

    class Config:
        from_attributes = True


class TimesheetOut(BaseModel):
    id: uuid.UUID
    status: str
    version: int
    cycle: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    submitted_by: Optional[uuid.UUID] = None
    submitted_at: Optional[datetime] = None
    client_approved_by: Optional[uuid.UUID] = None
    client_approved_at: Optional[datetime] = None
    manager_approved_by: Optional[uuid.UUID] = None
    manager_approved_at: Optional[datetime] = None
    shift: ShiftOut
    personnel: List[PersonnelOut] = []
    total_hours: Decimal = Decimal("0.00")
    client_signature: Optional[SignatureOut] = None
    manager_signature: Optional[SignatureOut] = None
    last_rejection: Optional[RejectionOut] = None
    pdf: Optional[PdfMetaOut] = None


class TimesheetSummaryOut(BaseModel):
    """Row in the pending-approval queue"""
    id: uuid.UUID
    status: str
    version: int
    shift_id: uuid.UUID
    shift_date: date
    job_name: str
    client_name: str
    submitted_at: Optional[datetime] = None
    worker_count: int = 0


class AuditEntryOut(BaseModel):
    id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID] = None
    actor_role: Optional[str] = None
    timestamp_utc: datetime
    changes: Optional[dict] = Field(default=None, validation_alias=AliasChoices("changes_json", "changes"))
    context: Optional[dict] = None

    class Config:
        from_attributes = True
