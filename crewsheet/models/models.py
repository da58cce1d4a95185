import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    UniqueConstraint,
    BigInteger,
    LargeBinary,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# User roles
ROLE_EMPLOYEE = "employee"
ROLE_CREW_CHIEF = "crew_chief"
ROLE_MANAGER = "manager"
ROLE_CLIENT = "client"


class ShiftStatus(str, enum.Enum):
    UPCOMING = "Upcoming"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TimesheetStatus(str, enum.Enum):
    DRAFT = "draft"  # implicit, never persisted
    PENDING_CLIENT_APPROVAL = "pending_client_approval"
    PENDING_FINAL_APPROVAL = "pending_final_approval"
    COMPLETED = "completed"
    REJECTED = "rejected"


ACTIVE_TIMESHEET_STATUSES = (
    TimesheetStatus.PENDING_CLIENT_APPROVAL.value,
    TimesheetStatus.PENDING_FINAL_APPROVAL.value,
)

# Clock status values on AssignedPersonnel
CLOCK_ASSIGNED = "Assigned"
CLOCK_CLOCKED_IN = "Clocked In"
CLOCK_CLOCKED_OUT = "Clocked Out"
CLOCK_SHIFT_ENDED = "Shift Ended"
CLOCK_NO_SHOW = "No Show"

MAX_TIME_ENTRIES = 3

_ACTIVE_WHERE = text(
    "status IN ('pending_client_approval', 'pending_final_approval')"
)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = uuid_pk()
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_person: Mapped[Optional[str]] = mapped_column(String(255))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    jobs = relationship("Job", back_populates="client")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default=ROLE_EMPLOYEE, index=True)  # employee|crew_chief|manager|client
    client_company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="SET NULL"), index=True)  # Set for client users
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    po_number: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    client = relationship("Client", back_populates="jobs")


class Shift(Base):
    """A scheduled block of work for a job"""
    __tablename__ = "shifts"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    date: Mapped[Date] = mapped_column(Date, nullable=False)  # Local date
    start_time: Mapped[Time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    end_time: Mapped[Time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    location: Mapped[Optional[str]] = mapped_column(String(255))
    requested_workers: Mapped[int] = mapped_column(Integer, default=1)
    crew_chief_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    status: Mapped[str] = mapped_column(String(50), default=ShiftStatus.UPCOMING.value)  # Upcoming|InProgress|Completed|Cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    job = relationship("Job")
    crew_chief = relationship("User")
    personnel = relationship(
        "AssignedPersonnel",
        back_populates="shift",
        order_by="AssignedPersonnel.created_at",
    )

    __table_args__ = (
        Index("idx_shifts_job_date", "job_id", "date"),
    )


class AssignedPersonnel(Base):
    """A worker's assignment to a shift"""
    __tablename__ = "assigned_personnel"

    id: Mapped[uuid.UUID] = uuid_pk()
    shift_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_code: Mapped[str] = mapped_column(String(10), nullable=False, default="SH")  # CC|SH|FO|RG|...
    role_on_shift: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), default=CLOCK_ASSIGNED)  # Assigned|Clocked In|Clocked Out|Shift Ended|No Show
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    shift = relationship("Shift", back_populates="personnel")
    employee = relationship("User")
    time_entries = relationship(
        "TimeEntry",
        back_populates="assignment",
        order_by="TimeEntry.entry_number",
    )

    __table_args__ = (
        UniqueConstraint("shift_id", "employee_id", name="uq_assignment_shift_employee"),
    )


class TimeEntry(Base):
    """One clock-in/clock-out pair; up to three per assignment"""
    __tablename__ = "time_entries"

    id: Mapped[uuid.UUID] = uuid_pk()
    assigned_personnel_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assigned_personnel.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1..3
    clock_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # Null while active

    assignment = relationship("AssignedPersonnel", back_populates="time_entries")

    __table_args__ = (
        UniqueConstraint("assigned_personnel_id", "entry_number", name="uq_time_entry_number"),
    )


class Timesheet(Base):
    """Approval-tracked record of a shift's worked hours"""
    __tablename__ = "timesheets"

    id: Mapped[uuid.UUID] = uuid_pk()
    shift_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("shifts.id", ondelete="RESTRICT"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TimesheetStatus.PENDING_CLIENT_APPROVAL.value)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # Bumped on every transition
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # Submission cycle, bumped on resubmit
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    submitted_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    client_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    client_signature_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    manager_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    manager_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    manager_signature_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    shift = relationship("Shift")
    pdf_artifact = relationship("PDFArtifact", uselist=False, back_populates="timesheet")

    __table_args__ = (
        # At most one pending timesheet per shift
        Index(
            "uq_timesheets_active_shift",
            "shift_id",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
        Index("idx_timesheets_status", "status"),
    )


class SignatureAttestation(Base):
    """Immutable record of a human approval"""
    __tablename__ = "signature_attestations"

    id: Mapped[uuid.UUID] = uuid_pk()
    timesheet_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("timesheets.id", ondelete="RESTRICT"), nullable=False, index=True)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    approval_type: Mapped[str] = mapped_column(String(20), nullable=False)  # client|manager
    signer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    signer_role: Mapped[str] = mapped_column(String(50), nullable=False)  # Role at time of signing
    image_bytes: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, deferred=True)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False, default="image/png")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    is_override: Mapped[bool] = mapped_column(Boolean, default=False)  # Client approval given by crew chief/manager
    justification: Mapped[Optional[str]] = mapped_column(Text)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    signer = relationship("User")

    __table_args__ = (
        UniqueConstraint("timesheet_id", "cycle", "approval_type", name="uq_attestation_cycle_type"),
    )


class PDFArtifact(Base):
    """Immutable finalized timesheet document"""
    __tablename__ = "pdf_artifacts"

    id: Mapped[uuid.UUID] = uuid_pk()
    timesheet_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("timesheets.id", ondelete="RESTRICT"), nullable=False, unique=True)
    timesheet_version: Mapped[int] = mapped_column(Integer, nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False, default="application/pdf")
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    checksum_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, deferred=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    timesheet = relationship("Timesheet", back_populates="pdf_artifact")


class AuditLog(Base):
    """Append-only audit log for timesheet transitions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # timesheet|shift
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # FINALIZE|CLIENT_APPROVE|MANAGER_APPROVE|REJECT|RESUBMIT
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {shift_id, reason, signature_id, pdf_artifact_id, ...}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_actor", "actor_id", "timestamp_utc"),
    )


class Notification(Base):
    """Best-effort alert records"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False)  # timesheet_submitted|timesheet_ready_for_approval|...
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    related_timesheet_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    related_shift_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="in_app")  # in_app|email
    delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
        Index("idx_notifications_created", "created_at"),
    )
