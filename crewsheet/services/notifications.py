"""
Notification dispatcher for timesheet transitions.
Runs after the transition commits, in its own session. Failures are logged, never raised.
"""
import smtplib
from email.message import EmailMessage
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import (
    Job, Notification, Shift, User,
    ROLE_CLIENT, ROLE_MANAGER,
)
from .events import (
    TransitionEvent,
    ACTION_FINALIZE, ACTION_RESUBMIT, ACTION_CLIENT_APPROVE, ACTION_MANAGER_APPROVE, ACTION_REJECT,
)

logger = structlog.get_logger(__name__)

# action -> (notification type, title, message template)
TEMPLATES: Dict[str, tuple] = {
    ACTION_FINALIZE: (
        "timesheet_submitted",
        "Timesheet Ready for Client Approval",
        "The timesheet for {job_name} on {shift_date} has been submitted and is awaiting client approval.",
    ),
    ACTION_RESUBMIT: (
        "timesheet_resubmitted",
        "Timesheet Resubmitted",
        "The timesheet for {job_name} on {shift_date} has been corrected and resubmitted for client approval.",
    ),
    ACTION_CLIENT_APPROVE: (
        "timesheet_ready_for_approval",
        "Timesheet Ready for Final Approval",
        "The timesheet for {job_name} on {shift_date} has been approved by the client and is ready for final approval.",
    ),
    ACTION_MANAGER_APPROVE: (
        "timesheet_completed",
        "Timesheet Completed",
        "The timesheet for {job_name} on {shift_date} has received final approval.",
    ),
    ACTION_REJECT: (
        "timesheet_rejected",
        "Timesheet Rejected",
        "The timesheet for {job_name} on {shift_date} was rejected. Reason: {reason}",
    ),
}


def _client_users(db: Session, client_id) -> List[User]:
    return db.query(User).filter(
        User.role == ROLE_CLIENT,
        User.client_company_id == client_id,
        User.is_active.is_(True),
    ).order_by(User.name.asc()).all()


def _managers(db: Session) -> List[User]:
    return db.query(User).filter(
        User.role == ROLE_MANAGER,
        User.is_active.is_(True),
    ).order_by(User.name.asc()).all()


def _crew_chief(db: Session, shift: Shift) -> List[User]:
    if not shift.crew_chief_id:
        return []
    user = db.get(User, shift.crew_chief_id)
    return [user] if user is not None and user.is_active else []


def resolve_recipients(db: Session, event: TransitionEvent, shift: Shift) -> List[User]:
    """
    Who hears about a transition:
    - finalize/resubmit: the client's users, the crew chief, all managers
    - client_approve: managers
    - manager_approve: the client's users and the crew chief
    - reject: the crew chief and managers
    """
    job = shift.job
    if event.action in (ACTION_FINALIZE, ACTION_RESUBMIT):
        groups = [_client_users(db, job.client_id), _crew_chief(db, shift), _managers(db)]
    elif event.action == ACTION_CLIENT_APPROVE:
        groups = [_managers(db)]
    elif event.action == ACTION_MANAGER_APPROVE:
        groups = [_client_users(db, job.client_id), _crew_chief(db, shift)]
    elif event.action == ACTION_REJECT:
        groups = [_crew_chief(db, shift), _managers(db)]
    else:
        groups = []

    seen = set()
    recipients = []
    for group in groups:
        for user in group:
            if user.id in seen:
                continue
            seen.add(user.id)
            recipients.append(user)
    return recipients


def build_payload(event: TransitionEvent, shift: Shift, job: Job) -> Dict:
    return {
        "action": event.action,
        "timesheet_id": str(event.timesheet_id),
        "shift_id": str(event.shift_id),
        "actor_id": str(event.actor_id),
        "from_status": event.from_status,
        "status": event.to_status,
        "reason": event.reason,
        "shift": {
            "date": shift.date.isoformat() if shift.date else None,
            "start_time": shift.start_time.isoformat() if shift.start_time else None,
            "end_time": shift.end_time.isoformat() if shift.end_time else None,
            "location": shift.location,
        },
        "job": {"id": str(job.id), "name": job.name},
        "client": {"id": str(job.client_id), "name": job.client.company_name if job.client else None},
    }


def send_email(to_address: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = to_address
    msg.set_content(body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


def email_enabled() -> bool:
    return bool(settings.enable_email and settings.smtp_host and settings.mail_from)


class NotificationDispatcher:
    """
    Fan a TransitionEvent out to the affected parties.

    Each recipient is handled on its own: one failing insert or email does not stop the others,
    and nothing propagates to the caller.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        mailer: Callable[[str, str, str], None] = send_email,
    ):
        self._session_factory = session_factory or SessionLocal
        self._mailer = mailer

    def __call__(self, event: TransitionEvent) -> int:
        return self.dispatch(event)

    def dispatch(self, event: TransitionEvent) -> int:
        """Returns the number of in-app notifications recorded."""
        log = logger.bind(timesheet_id=str(event.timesheet_id), action=event.action)
        delivered = 0
        try:
            db = self._session_factory()
        except Exception as e:
            log.warning("notification_dispatch_failed", error=str(e))
            return 0
        try:
            shift = db.get(Shift, event.shift_id)
            if shift is None:
                log.warning("notification_dispatch_skipped", reason="shift not found")
                return 0
            job = shift.job
            notif_type, title, template = TEMPLATES[event.action]
            message = template.format(
                job_name=job.name,
                shift_date=shift.date.strftime("%m/%d/%Y") if shift.date else "",
                reason=event.reason or "",
            )
            payload = build_payload(event, shift, job)
            recipients = resolve_recipients(db, event, shift)
            # Snapshot plain values; a failed commit expires ORM state
            targets = [(u.id, u.email) for u in recipients]
        except Exception as e:
            log.warning("notification_dispatch_failed", error=str(e))
            db.close()
            return 0

        try:
            for user_id, email in targets:
                if self._record(db, log, user_id, notif_type, title, message, payload, event):
                    delivered += 1
                if email and email_enabled():
                    self._email(db, log, user_id, email, notif_type, title, message, payload, event)
        finally:
            db.close()

        log.info("notifications_dispatched", recipients=len(targets), delivered=delivered)
        return delivered

    def _record(self, db: Session, log, user_id, notif_type, title, message, payload, event) -> bool:
        try:
            db.add(Notification(
                user_id=user_id,
                type=notif_type,
                title=title,
                message=message,
                payload_json=payload,
                related_timesheet_id=event.timesheet_id,
                related_shift_id=event.shift_id,
                channel="in_app",
                delivered=True,
            ))
            db.commit()
            return True
        except Exception as e:
            db.rollback()
            log.warning("notification_failed", user_id=str(user_id), channel="in_app", error=str(e))
            return False

    def _email(self, db: Session, log, user_id, email, notif_type, title, message, payload, event) -> None:
        error = None
        try:
            self._mailer(email, title, message)
        except Exception as e:
            error = str(e)
            log.warning("notification_failed", user_id=str(user_id), channel="email", error=error)
        try:
            db.add(Notification(
                user_id=user_id,
                type=notif_type,
                title=title,
                message=message,
                payload_json=payload,
                related_timesheet_id=event.timesheet_id,
                related_shift_id=event.shift_id,
                channel="email",
                delivered=error is None,
                is_read=True,
                error_message=error,
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            log.warning("notification_failed", user_id=str(user_id), channel="email", error=str(e))


dispatcher = NotificationDispatcher()


# ----- Inbox queries -----

def list_notifications(
    db: Session,
    user: User,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> List[Notification]:
    query = db.query(Notification).filter(
        Notification.user_id == user.id,
        Notification.channel == "in_app",
    )
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).offset(offset).all()


def unread_count(db: Session, user: User) -> int:
    return db.query(Notification).filter(
        Notification.user_id == user.id,
        Notification.channel == "in_app",
        Notification.is_read.is_(False),
    ).count()


def mark_read(db: Session, user: User, notification_id) -> Optional[Notification]:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user.id,
    ).first()
    if notification is None:
        return None
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def mark_all_read(db: Session, user: User) -> int:
    updated = db.query(Notification).filter(
        Notification.user_id == user.id,
        Notification.is_read.is_(False),
    ).update({Notification.is_read: True}, synchronize_session=False)
    db.commit()
    return updated
