"""
Document finalization pipeline.
Snapshots a timesheet, renders it under a hard timeout, and persists the PDFArtifact exactly once.
"""
import hashlib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime, timezone
from typing import Optional

import structlog
from slugify import slugify
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import DocumentGenerationError
from ..models.models import PDFArtifact, SignatureAttestation, Timesheet, User
from ..document_creator.timesheet_pdf import (
    SignatureBlock,
    TimeEntryData,
    TimesheetDocumentData,
    WorkerRow,
    render_timesheet_pdf,
)
from .time_rules import MalformedTimeEntry, validate_entries

logger = structlog.get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def _signature_block(db: Session, attestation_id, label: str) -> Optional[SignatureBlock]:
    if not attestation_id:
        return None
    attestation = db.get(SignatureAttestation, attestation_id)
    if attestation is None:
        raise DocumentGenerationError(f"{label.lower()} signature {attestation_id} is missing")
    signer = db.get(User, attestation.signer_id)
    return SignatureBlock(
        label=label,
        signer_name=signer.name if signer else "Unknown",
        captured_at=attestation.captured_at,
        image_bytes=attestation.image_bytes,
        is_override=bool(attestation.is_override),
    )


def build_document_data(db: Session, timesheet: Timesheet) -> TimesheetDocumentData:
    """Freeze everything the PDF shows into an immutable snapshot."""
    shift = timesheet.shift
    job = shift.job
    client = job.client

    workers = []
    for assignment in shift.personnel:
        try:
            validate_entries(assignment.time_entries)
        except MalformedTimeEntry as e:
            raise DocumentGenerationError(
                f"malformed time entries for assignment {assignment.id}: {e}"
            ) from e
        entries = tuple(
            TimeEntryData(entry_number=e.entry_number, clock_in=e.clock_in, clock_out=e.clock_out)
            for e in assignment.time_entries
        )
        employee = assignment.employee
        workers.append((
            (employee.name if employee else "").lower(),
            str(assignment.id),
            WorkerRow(
                name=employee.name if employee else "Unknown",
                role_code=assignment.role_code or "",
                entries=entries,
            ),
        ))
    workers.sort(key=lambda item: (item[0], item[1]))

    return TimesheetDocumentData(
        timesheet_id=str(timesheet.id),
        timesheet_version=timesheet.version,
        status=timesheet.status,
        organization_name=settings.organization_name,
        footer_text=settings.organization_footer,
        timezone=settings.tz_default,
        client_name=client.company_name,
        client_contact=client.contact_person,
        job_name=job.name,
        po_number=job.po_number,
        shift_date=shift.date,
        start_time=shift.start_time,
        end_time=shift.end_time,
        location=shift.location,
        crew_chief_name=shift.crew_chief.name if shift.crew_chief else None,
        workers=tuple(w for _, _, w in workers),
        client_signature=_signature_block(db, timesheet.client_signature_id, "CLIENT APPROVAL"),
        manager_signature=_signature_block(db, timesheet.manager_signature_id, "MANAGER APPROVAL"),
    )


def render_with_timeout(data: TimesheetDocumentData, timeout_s: Optional[float] = None) -> bytes:
    """
    Render on a dedicated worker thread; give up after ``timeout_s`` seconds.

    A render that overruns cannot be interrupted and keeps its thread until it
    finishes, but it never holds up the renders that come after it.
    """
    timeout_s = settings.pdf_generation_timeout_s if timeout_s is None else timeout_s
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timesheet-pdf")
    future = executor.submit(render_timesheet_pdf, data)
    try:
        return future.result(timeout=timeout_s)
    except FuturesTimeout:
        logger.warning("timesheet_pdf_render_timeout", timesheet_id=data.timesheet_id, timeout_s=timeout_s)
        raise DocumentGenerationError(f"timesheet PDF generation exceeded {timeout_s}s")
    except DocumentGenerationError:
        raise
    except Exception as e:
        raise DocumentGenerationError(f"timesheet PDF generation failed: {e}") from e
    finally:
        executor.shutdown(wait=False)


def pdf_filename(data: TimesheetDocumentData) -> str:
    client_slug = slugify(data.client_name) or "client"
    return f"timesheet-{client_slug}-{data.shift_date.isoformat()}.pdf"


def get_pdf_artifact(db: Session, timesheet_id) -> Optional[PDFArtifact]:
    return db.query(PDFArtifact).filter(PDFArtifact.timesheet_id == timesheet_id).first()


def ensure_pdf_artifact(db: Session, timesheet: Timesheet) -> PDFArtifact:
    """
    Return the timesheet's PDFArtifact, generating it if it does not exist yet.

    Never regenerates: an existing artifact is returned as-is. Any failure raises
    DocumentGenerationError and leaves nothing behind in the session.
    """
    existing = get_pdf_artifact(db, timesheet.id)
    if existing is not None:
        return existing

    data = build_document_data(db, timesheet)
    started = datetime.now(timezone.utc)
    pdf_bytes = render_with_timeout(data)
    if not pdf_bytes:
        raise DocumentGenerationError("timesheet PDF generation produced no output")

    artifact = PDFArtifact(
        timesheet_id=timesheet.id,
        timesheet_version=timesheet.version,
        filename=pdf_filename(data),
        content_type=PDF_CONTENT_TYPE,
        size_bytes=len(pdf_bytes),
        checksum_sha256=hashlib.sha256(pdf_bytes).hexdigest(),
        data=pdf_bytes,
        generated_at=datetime.now(timezone.utc),
    )
    db.add(artifact)
    db.flush()

    logger.info(
        "timesheet_pdf_generated",
        timesheet_id=str(timesheet.id),
        artifact_id=str(artifact.id),
        size_bytes=artifact.size_bytes,
        workers=data.worker_count,
        total_hours=str(data.total_hours),
        elapsed_ms=int((artifact.generated_at - started).total_seconds() * 1000),
    )
    return artifact
