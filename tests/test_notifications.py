"""Tests for the notification outbox."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

from sqlalchemy import select

from servio.extensions import db
from servio.models import Notification
from servio.notifications import LogSink, SMTPSink, dispatch_pending, get_sink
from servio.workflow import BookingWorkflow


def _rows(app, status: str | None = None) -> list[tuple[str, str, str, int]]:
    with app.app_context():
        query = select(Notification)
        if status:
            query = query.where(Notification.status == status)
        rows = db.session.scalars(query).all()
        return [(row.notification_type, row.recipient_role, row.status, row.attempts) for row in rows]


def test_booking_creation_queues_customer_and_company(app, make_booking, sink) -> None:
    make_booking()

    assert sorted((t, r, s) for t, r, s, _ in _rows(app)) == [
        ("booking_created", "company", "sent"),
        ("booking_created", "customer", "sent"),
    ]
    assert len(sink.sent) == 2


def test_failed_delivery_stays_pending_and_is_retried(app, make_booking, make_agent, sink) -> None:
    sink.fail = True
    booking_id, _ = make_booking()
    agent_id = make_agent()
    with app.app_context():
        BookingWorkflow().confirm(booking_id, agent_id)

    assert len(_rows(app, "pending")) == 5

    sink.fail = False
    with app.app_context():
        sent, unsent = dispatch_pending()

    assert (sent, unsent) == (5, 0)
    assert all(attempts == 2 for _, _, _, attempts in _rows(app, "sent"))


def test_delivery_gives_up_after_max_attempts(app, make_booking, sink) -> None:
    app.config["NOTIFICATION_MAX_ATTEMPTS"] = 2
    sink.fail = True
    make_booking()

    with app.app_context():
        assert dispatch_pending() == (0, 2)
        assert dispatch_pending() == (0, 0)

    assert len(_rows(app, "failed")) == 2


def test_dispatch_command(app, make_booking, sink) -> None:
    sink.fail = True
    make_booking()
    sink.fail = False

    result = app.test_cli_runner().invoke(args=["dispatch-notifications"])

    assert result.exit_code == 0
    assert "Sent 2 notification(s); 0 still pending." in result.output


def test_sink_selection(app) -> None:
    with app.app_context():
        assert isinstance(get_sink(), LogSink)
        app.config["MAIL_SERVER"] = "smtp.example.com"
        app.config["MAIL_USERNAME"] = "bot@example.com"
        sink = get_sink()
        assert isinstance(sink, SMTPSink)
        assert sink.timeout == app.config["NOTIFICATION_TIMEOUT"]


def test_smtp_sink_uses_starttls_and_timeout() -> None:
    sink = SMTPSink("smtp.example.com", 587, "bot", "pw", True, "Servio <bot@example.com>", 5)
    server = MagicMock()
    with patch("servio.notifications.smtplib.SMTP", return_value=server) as smtp:
        sink.send("to@example.com", "Hello", "<p>Hi</p>")

    smtp.assert_called_once_with("smtp.example.com", 587, timeout=5)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("bot", "pw")
    assert server.sendmail.call_args.args[:2] == ("bot@example.com", ["to@example.com"])
    server.quit.assert_called_once()
