"""
Outbound student notifications.

``notify`` only writes a row to the outbox; it is best-effort and never fails
the operation that triggered it. ``NotificationDispatcher.drain`` is run on a
schedule and hands pending rows to the SMTP transport, counting attempts.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Callable, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import NotifierUnavailable
from app.models import NotificationOutbox, NotificationStatus
from app.services.clock import Clock, utcnow

logger = logging.getLogger(__name__)

LEAD_RECEIVED = "LEAD_RECEIVED"
REGISTRATION_CONFIRMED = "REGISTRATION_CONFIRMED"
DOCUMENT_REJECTED = "DOCUMENT_REJECTED"

TEMPLATES = {
    LEAD_RECEIVED: (
        "We received your enquiry",
        "Dear {name},\n\nThank you for contacting JV Overseas. "
        "A counsellor will reach out to you shortly.\n",
    ),
    REGISTRATION_CONFIRMED: (
        "Registration confirmed - {student_id}",
        "Dear {name},\n\nYour registration is confirmed. Your student ID is {student_id}.\n"
        "Amount paid: {paid_amount} of {total_amount}.\n",
    ),
    DOCUMENT_REJECTED: (
        "Action needed: {doc_id} was rejected",
        "Dear {name},\n\nYour document '{doc_id}' was rejected.\n"
        "Remarks: {remarks}\n\nPlease upload a corrected copy.\n",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render(kind: str, payload: Optional[Dict[str, Any]]):
    subject, body = TEMPLATES.get(kind, (kind.replace("_", " ").title(), "{message}"))
    values = _SafeDict(payload or {})
    return subject.format_map(values), body.format_map(values)


def notify(db: Session, kind: str, recipient: Optional[str], payload: Optional[Dict[str, Any]] = None) -> bool:
    """Queue a notification. Returns False (and logs) instead of raising."""
    if not recipient:
        logger.info("Skipping %s notification: no recipient", kind)
        return False
    try:
        db.add(NotificationOutbox(
            kind=kind,
            recipient=recipient,
            payload=jsonable_encoder(payload) if payload else None,
            status=NotificationStatus.PENDING,
        ))
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        logger.warning("Failed to queue %s notification for %s: %s", kind, recipient, e)
        return False


class SMTPTransport:
    """Delivers rendered notifications over SMTP (STARTTLS by default)."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.host = host if host is not None else settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.from_email = from_email or settings.SMTP_FROM_EMAIL
        self.from_name = from_name or settings.SMTP_FROM_NAME
        self.timeout = timeout or settings.STORE_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.host)

    def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.is_configured():
            raise NotifierUnavailable("smtp_not_configured")

        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.from_email, [recipient], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotifierUnavailable("smtp_send_failed", {"error": str(e)}) from e


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: Optional[SMTPTransport] = None,
        max_attempts: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.transport = transport or SMTPTransport()
        self.max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS
        self.clock = clock

    def drain(self, batch_size: int = 50) -> int:
        """Send up to ``batch_size`` pending notifications. Returns how many were delivered."""
        db = self.session_factory()
        sent = 0
        try:
            pending = (
                db.query(NotificationOutbox)
                .filter(
                    NotificationOutbox.status == NotificationStatus.PENDING,
                    NotificationOutbox.attempts < self.max_attempts,
                )
                .order_by(NotificationOutbox.id)
                .limit(batch_size)
                .all()
            )
            for item in pending:
                subject, body = render(item.kind, item.payload)
                try:
                    self.transport.send(item.recipient, subject, body)
                    item.status = NotificationStatus.SENT
                    item.sent_at = self.clock()
                    item.last_error = None
                    sent += 1
                except NotifierUnavailable as e:
                    item.attempts += 1
                    item.last_error = f"{e.reason}: {e.detail}" if e.detail else e.reason
                    if item.attempts >= self.max_attempts:
                        item.status = NotificationStatus.FAILED
                        logger.error("Giving up on notification %s to %s after %s attempts", item.id, item.recipient, item.attempts)
                    else:
                        logger.warning("Notification %s to %s failed (attempt %s): %s", item.id, item.recipient, item.attempts, item.last_error)
                db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Notification drain failed: %s", e)
        finally:
            db.close()
        if sent:
            logger.info("Delivered %s notification(s)", sent)
        return sent
