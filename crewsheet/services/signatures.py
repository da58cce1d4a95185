"""
Signature capture and attestation storage.
"""
import base64
import binascii
import hashlib
import io
from typing import Optional

import structlog
from PIL import Image, UnidentifiedImageError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ConflictError, PermissionDenied, StaleStateError, ValidationError
from ..models.models import SignatureAttestation, Timesheet, User
from .permissions import can_client_approve, can_manager_approve, is_client_override

logger = structlog.get_logger(__name__)

APPROVAL_CLIENT = "client"
APPROVAL_MANAGER = "manager"
APPROVAL_TYPES = (APPROVAL_CLIENT, APPROVAL_MANAGER)

_CONTENT_TYPES = {"PNG": "image/png", "JPEG": "image/jpeg", "GIF": "image/gif", "WEBP": "image/webp"}


def decode_signature_payload(payload: Optional[str]) -> bytes:
    """
    Accept a data URL (``data:image/png;base64,...``) as produced by the signature pad,
    or bare base64, and return the raw image bytes.
    """
    if not payload or not payload.strip():
        raise ValidationError("signature required", field="signature")
    data = payload.strip()
    if data.startswith("data:"):
        header, _, data = data.partition(",")
        if ";base64" not in header:
            raise ValidationError("signature must be base64 encoded", field="signature")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("signature is not valid base64", field="signature")


def _sniff_image(image_bytes: bytes) -> str:
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            fmt = im.format
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        raise ValidationError("signature is not a readable image", field="signature")
    return _CONTENT_TYPES.get(fmt or "", "application/octet-stream")


def validate_image(image_bytes: Optional[bytes]) -> str:
    """Size and format checks. Returns the image content type."""
    if not image_bytes:
        raise ValidationError("signature required", field="signature")
    if len(image_bytes) > settings.signature_max_bytes:
        raise ValidationError(
            f"signature exceeds {settings.signature_max_bytes} bytes", field="signature"
        )
    return _sniff_image(image_bytes)


def get_attestation(db: Session, timesheet: Timesheet, approval_type: str) -> Optional[SignatureAttestation]:
    """Attestation of the given type for the timesheet's current cycle."""
    return db.query(SignatureAttestation).filter(
        SignatureAttestation.timesheet_id == timesheet.id,
        SignatureAttestation.cycle == timesheet.cycle,
        SignatureAttestation.approval_type == approval_type,
    ).first()


def capture_signature(
    db: Session,
    timesheet: Timesheet,
    actor: User,
    approval_type: str,
    image_bytes: Optional[bytes],
    justification: Optional[str] = None,
) -> SignatureAttestation:
    """
    Record an immutable attestation for ``approval_type`` on the timesheet's current cycle.

    Resubmitting the identical image by the same signer returns the existing record.
    A different signature once one is recorded raises ConflictError.
    The record is flushed into the caller's unit of work, never committed here.
    """
    if approval_type not in APPROVAL_TYPES:
        raise ValidationError(f"unknown approval type {approval_type!r}", field="approval_type")

    shift = timesheet.shift
    if approval_type == APPROVAL_CLIENT:
        allowed = can_client_approve(actor, shift)
    else:
        allowed = can_manager_approve(actor)
    if not allowed:
        raise PermissionDenied(f"not allowed to sign {approval_type} approval")

    content_type = validate_image(image_bytes)
    checksum = hashlib.sha256(image_bytes).hexdigest()

    override = approval_type == APPROVAL_CLIENT and is_client_override(actor, shift)
    justification = (justification or "").strip() or None
    if override and settings.require_override_justification and not justification:
        raise ValidationError("justification required when signing for the client", field="justification")

    existing = get_attestation(db, timesheet, approval_type)
    if existing is not None:
        if str(existing.signer_id) == str(actor.id) and existing.checksum_sha256 == checksum:
            return existing
        raise ConflictError(f"{approval_type} signature already recorded")

    attestation = SignatureAttestation(
        timesheet_id=timesheet.id,
        cycle=timesheet.cycle,
        approval_type=approval_type,
        signer_id=actor.id,
        signer_role=actor.role,
        image_bytes=image_bytes,
        content_type=content_type,
        size_bytes=len(image_bytes),
        checksum_sha256=checksum,
        is_override=override,
        justification=justification,
    )
    db.add(attestation)
    try:
        db.flush()
    except IntegrityError as e:
        # Another session recorded this stage between the lookup above and the insert
        raise StaleStateError(
            f"{approval_type} signature for timesheet {timesheet.id} was just recorded by someone else"
        ) from e

    logger.info(
        "signature_captured",
        timesheet_id=str(timesheet.id),
        attestation_id=str(attestation.id),
        approval_type=approval_type,
        signer_id=str(actor.id),
        override=override,
    )
    return attestation
