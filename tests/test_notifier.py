"""
Notification outbox and the scheduled dispatcher
"""
from unittest.mock import Mock, patch

import pytest

from app.errors import NotifierUnavailable
from app.models import NotificationOutbox, NotificationStatus
from app.services import notifier
from app.services.notifier import NotificationDispatcher, SMTPTransport


def queue(db, kind=notifier.LEAD_RECEIVED, recipient="student@example.com", payload=None):
    assert notifier.notify(db, kind, recipient, payload or {"name": "Student"})


class TestNotify:
    def test_queues_pending_row(self, db):
        queue(db, notifier.REGISTRATION_CONFIRMED, payload={"name": "Asha", "student_id": "STU-2025-1000"})
        row = db.query(NotificationOutbox).one()
        assert row.status == NotificationStatus.PENDING
        assert row.attempts == 0
        assert row.payload["student_id"] == "STU-2025-1000"

    def test_no_recipient_is_skipped(self, db):
        assert notifier.notify(db, notifier.LEAD_RECEIVED, None, {"name": "Anon"}) is False
        assert db.query(NotificationOutbox).count() == 0

    def test_store_failure_does_not_raise(self):
        db = Mock()
        db.commit.side_effect = RuntimeError("store down")
        assert notifier.notify(db, notifier.LEAD_RECEIVED, "a@b.c", {}) is False
        db.rollback.assert_called_once()


class TestRender:
    def test_known_template(self):
        subject, body = notifier.render(notifier.DOCUMENT_REJECTED, {"name": "Asha", "doc_id": "passport", "remarks": "expired"})
        assert subject == "Action needed: passport was rejected"
        assert "Remarks: expired" in body

    def test_missing_values_render_blank(self):
        subject, _ = notifier.render(notifier.REGISTRATION_CONFIRMED, {})
        assert subject == "Registration confirmed - "

    def test_unknown_kind(self):
        subject, body = notifier.render("VISA_APPROVED", {"message": "Congratulations"})
        assert subject == "Visa Approved"
        assert body == "Congratulations"


class TestDispatcher:
    def test_delivers_pending(self, db, session_factory, clock):
        queue(db)
        transport = Mock(spec=SMTPTransport)
        dispatcher = NotificationDispatcher(session_factory, transport=transport, clock=clock)

        assert dispatcher.drain() == 1
        transport.send.assert_called_once()
        recipient, subject, _ = transport.send.call_args.args
        assert recipient == "student@example.com"
        assert subject == "We received your enquiry"

        db.expire_all()
        row = db.query(NotificationOutbox).one()
        assert row.status == NotificationStatus.SENT
        assert row.sent_at is not None
        assert dispatcher.drain() == 0

    def test_failures_are_retried_then_abandoned(self, db, session_factory):
        queue(db)
        transport = Mock(spec=SMTPTransport)
        transport.send.side_effect = NotifierUnavailable("smtp_send_failed", {"error": "timeout"})
        dispatcher = NotificationDispatcher(session_factory, transport=transport, max_attempts=2)

        assert dispatcher.drain() == 0
        db.expire_all()
        row = db.query(NotificationOutbox).one()
        assert row.status == NotificationStatus.PENDING
        assert row.attempts == 1
        assert "timeout" in row.last_error

        dispatcher.drain()
        db.expire_all()
        row = db.query(NotificationOutbox).one()
        assert row.status == NotificationStatus.FAILED
        assert row.attempts == 2

        dispatcher.drain()
        assert transport.send.call_count == 2


class TestSMTPTransport:
    def test_unconfigured_transport_is_unavailable(self):
        transport = SMTPTransport(host="")
        assert transport.is_configured() is False
        with pytest.raises(NotifierUnavailable):
            transport.send("a@b.c", "s", "b")

    def test_sends_over_starttls(self):
        transport = SMTPTransport(host="smtp.example.com", port=587, username="u", password="p", use_tls=True)
        with patch("app.services.notifier.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            transport.send("student@example.com", "Hello", "Body")

        smtp.assert_called_once_with("smtp.example.com", 587, timeout=transport.timeout)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        server.sendmail.assert_called_once()
        assert server.sendmail.call_args.args[1] == ["student@example.com"]

    def test_socket_errors_become_notifier_unavailable(self):
        transport = SMTPTransport(host="smtp.example.com")
        with patch("app.services.notifier.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(NotifierUnavailable) as exc:
                transport.send("student@example.com", "Hello", "Body")
        assert exc.value.reason == "smtp_send_failed"
