"""Email notification outbox.

Workflow transitions add ``Notification`` rows to the session they commit,
so a notification exists if and only if its transition committed. Delivery
happens afterwards through a sink; a failed delivery leaves the row pending
for ``dispatch_pending`` to retry and never touches booking state.
"""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, Protocol

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Agent, Booking, Notification, User, utc_now

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def send(self, to: str, subject: str, html: str) -> None: ...


class LogSink:
    """Used when no mail server is configured."""

    def send(self, to: str, subject: str, html: str) -> None:
        logger.info("Email (not sent, no MAIL_SERVER): to=%s subject=%s", to, subject)


class SMTPSink:
    def __init__(
        self,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        use_tls: bool,
        sender: str,
        timeout: float,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))

        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
        try:
            if self.username:
                server.login(self.username, self.password or "")
            server.sendmail(self.sender.split("<")[-1].rstrip(">"), [to], msg.as_string())
        finally:
            server.quit()


def get_sink() -> NotificationSink:
    config = current_app.config
    sink = current_app.extensions.get("servio.notification_sink")
    if sink is not None:
        return sink
    if not config.get("MAIL_SERVER"):
        return LogSink()
    sender = config.get("MAIL_DEFAULT_SENDER") or f"{config['BUSINESS_NAME']} <{config.get('MAIL_USERNAME')}>"
    return SMTPSink(
        host=config["MAIL_SERVER"],
        port=config["MAIL_PORT"],
        username=config.get("MAIL_USERNAME"),
        password=config.get("MAIL_PASSWORD"),
        use_tls=config["MAIL_USE_TLS"],
        sender=sender,
        timeout=config["NOTIFICATION_TIMEOUT"],
    )


# --- templates -------------------------------------------------------------


def _wrap(title: str, inner: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #4F46E5;">{escape(title)}</h2>{inner}'
        f"<p>Best regards,<br>The {escape(current_app.config['BUSINESS_NAME'])} Team</p></div>"
    )


def _money(cents: int) -> str:
    return f"₹{cents / 100:.2f}"


def _booking_details(booking: Booking, *, include_customer: bool = False, agent: Agent | None = None) -> str:
    lines = "".join(
        f"<li>{escape(item.name)} - {_money(item.unit_price_cents)} x {item.quantity}</li>"
        for item in booking.items
    )
    parts = [f"<p><strong>Booking ID:</strong> {booking.booking_id}</p>"]
    if include_customer and booking.user:
        parts.append(
            "<p><strong>Customer:</strong> "
            f"{escape(booking.user.name)} ({escape(booking.user.phone or 'Not provided')})</p>"
        )
    parts.append(f"<p><strong>Services:</strong></p><ul>{lines}</ul>")
    parts.append(f"<p><strong>Total Amount:</strong> {_money(booking.total_cents)}</p>")
    parts.append(f"<p><strong>Scheduled Date:</strong> {booking.scheduled_at:%d %b %Y, %I:%M %p} UTC</p>")
    if agent is not None:
        parts.append(
            "<p><strong>Assigned Agent:</strong> "
            f"{escape(agent.name)}, {escape(agent.phone)}, {escape(agent.email)}</p>"
        )
    return '<div style="background-color: #F3F4F6; padding: 20px; border-radius: 8px;">' + "".join(parts) + "</div>"


def _queue(
    *,
    to: str | None,
    role: str,
    notification_type: str,
    subject: str,
    body: str,
    user_id: int | None = None,
    booking_id: int | None = None,
) -> Notification | None:
    if not to:
        logger.warning("Skipping %s notification for %s: no recipient address", notification_type, role)
        return None
    notification = Notification(
        user_id=user_id,
        booking_id=booking_id,
        recipient_email=to,
        recipient_role=role,
        notification_type=notification_type,
        subject=subject,
        body=body,
    )
    db.session.add(notification)
    return notification


def _company_email() -> str | None:
    return current_app.config.get("BUSINESS_EMAIL")


def queue_booking_created(booking: Booking) -> list[Notification]:
    customer = booking.user
    queued = [
        _queue(
            to=customer.email if customer else None,
            role="customer",
            notification_type="booking_created",
            subject=f"New Booking-{booking.booking_id}",
            body=_wrap(
                "Booking Received",
                f"<p>Dear {escape(customer.name) if customer else 'Customer'},</p>"
                "<p>Thank you for your payment. We will assign a professional shortly.</p>"
                + _booking_details(booking),
            ),
            user_id=booking.user_id,
            booking_id=booking.booking_id,
        ),
        _queue(
            to=_company_email(),
            role="company",
            notification_type="booking_created",
            subject=f"New Booking - {booking.booking_id}",
            body=_wrap("New Booking", _booking_details(booking, include_customer=True)),
            booking_id=booking.booking_id,
        ),
    ]
    return [n for n in queued if n is not None]


def queue_booking_confirmed(booking: Booking, agent: Agent) -> list[Notification]:
    customer = booking.user
    queued = [
        _queue(
            to=customer.email if customer else None,
            role="customer",
            notification_type="booking_confirmed",
            subject="Booking Confirmation",
            body=_wrap(
                "Booking Confirmation",
                f"<p>Dear {escape(customer.name) if customer else 'Customer'},</p>"
                "<p>Your booking has been confirmed. Here are the details:</p>"
                + _booking_details(booking, agent=agent),
            ),
            user_id=booking.user_id,
            booking_id=booking.booking_id,
        ),
        _queue(
            to=_company_email(),
            role="company",
            notification_type="booking_confirmed",
            subject="New Booking Confirmation",
            body=_wrap(
                "New Booking Confirmation",
                _booking_details(booking, include_customer=True, agent=agent),
            ),
            booking_id=booking.booking_id,
        ),
        _queue(
            to=agent.email,
            role="agent",
            notification_type="booking_confirmed",
            subject="New Booking Assignment",
            body=_wrap(
                "New Booking Assignment",
                f"<p>Dear {escape(agent.name)},</p><p>You have been assigned a new booking.</p>"
                + _booking_details(booking, include_customer=True)
                + "<p>Please contact the customer to confirm the appointment.</p>",
            ),
            user_id=agent.user_id,
            booking_id=booking.booking_id,
        ),
    ]
    return [n for n in queued if n is not None]


def queue_booking_cancelled(booking: Booking) -> list[Notification]:
    reason = escape(booking.cancellation_reason or "Not specified")
    body = _wrap(
        "Booking Cancelled",
        f"<p>Booking {booking.booking_id} has been cancelled.</p><p><strong>Reason:</strong> {reason}</p>"
        + _booking_details(booking),
    )
    recipients = [
        (booking.user.email if booking.user else None, "customer", booking.user_id),
        (_company_email(), "company", None),
    ]
    if booking.agent_id is not None:
        recipients.append((booking.agent_email, "agent", booking.agent.user_id if booking.agent else None))
    queued = [
        _queue(
            to=to,
            role=role,
            notification_type="booking_cancelled",
            subject=f"Booking Cancelled - {booking.booking_id}",
            body=body,
            user_id=user_id,
            booking_id=booking.booking_id,
        )
        for to, role, user_id in recipients
    ]
    return [n for n in queued if n is not None]


def queue_booking_rescheduled(booking: Booking) -> list[Notification]:
    recipients = [(booking.user.email if booking.user else None, "customer", booking.user_id)]
    if booking.agent_id is not None:
        recipients.append((booking.agent_email, "agent", booking.agent.user_id if booking.agent else None))
    body = _wrap("Booking Rescheduled", _booking_details(booking))
    queued = [
        _queue(
            to=to,
            role=role,
            notification_type="booking_rescheduled",
            subject=f"Booking Rescheduled - {booking.booking_id}",
            body=body,
            user_id=user_id,
            booking_id=booking.booking_id,
        )
        for to, role, user_id in recipients
    ]
    return [n for n in queued if n is not None]


def queue_booking_completed(booking: Booking) -> list[Notification]:
    recipients = [
        (booking.user.email if booking.user else None, "customer", booking.user_id),
        (_company_email(), "company", None),
    ]
    if booking.agent_id is not None:
        recipients.append((booking.agent_email, "agent", booking.agent.user_id if booking.agent else None))
    body = _wrap(
        "Booking Completed",
        "<p>Your service has been completed. Thank you for choosing us.</p>" + _booking_details(booking),
    )
    queued = [
        _queue(
            to=to,
            role=role,
            notification_type="booking_completed",
            subject=f"Booking Completed - {booking.booking_id}",
            body=body,
            user_id=user_id,
            booking_id=booking.booking_id,
        )
        for to, role, user_id in recipients
    ]
    return [n for n in queued if n is not None]


def queue_password_code(user: User, code: str) -> Notification | None:
    ttl = current_app.config["RESET_CODE_TTL_MINUTES"]
    return _queue(
        to=user.email,
        role="provider" if user.role == "provider" else "customer",
        notification_type="password_reset",
        subject="Password Change Verification Code",
        body=_wrap(
            "Password Change Verification",
            "<p>Please use the following verification code:</p>"
            '<div style="background-color: #f4f4f4; padding: 15px; text-align: center; font-size: 24px;">'
            f"<strong>{code}</strong></div>"
            f"<p>This code will expire in {ttl} minutes.</p>"
            "<p>If you didn't request this change, please ignore this email.</p>",
        ),
        user_id=user.user_id,
    )


def queue_professional_registered(user: User) -> list[Notification]:
    business = current_app.config["BUSINESS_NAME"]
    queued = [
        _queue(
            to=user.email,
            role="provider",
            notification_type="professional_registered",
            subject=f"Registration Confirmation - {business}",
            body=_wrap(
                "Registration Received",
                f"<p>Thank you for registering as a professional on {escape(business)}.</p>",
            ),
            user_id=user.user_id,
        ),
        _queue(
            to=_company_email(),
            role="company",
            notification_type="professional_registered",
            subject=f"New Professional Registration - {business}",
            body=_wrap(
                "New Professional Registration",
                f"<p>{escape(user.name)} ({escape(user.email)}) registered as a professional. "
                "Please review their application in the admin dashboard.</p>",
            ),
        ),
    ]
    return [n for n in queued if n is not None]


def queue_professional_status(user: User) -> Notification | None:
    approved = (
        "<p>You can now log in to your account and start offering your services.</p>"
        if user.approval_status == "approved"
        else ""
    )
    return _queue(
        to=user.email,
        role="provider",
        notification_type="professional_status",
        subject=f"Application Status Update - {current_app.config['BUSINESS_NAME']}",
        body=_wrap(
            "Application Status Update",
            f"<p>Dear {escape(user.name)},</p>"
            f"<p>Your application status has been updated to: <strong>{user.approval_status}</strong></p>"
            + approved,
        ),
        user_id=user.user_id,
    )


# --- delivery --------------------------------------------------------------


def deliver(notification: Notification, sink: NotificationSink | None = None) -> bool:
    """Attempt one delivery and record the outcome. Never raises on sink errors."""
    sink = sink or get_sink()
    max_attempts = current_app.config["NOTIFICATION_MAX_ATTEMPTS"]
    notification.attempts = (notification.attempts or 0) + 1
    try:
        sink.send(notification.recipient_email, notification.subject, notification.body)
    except Exception as exc:  # sink failures must not surface to the caller
        notification.last_error = str(exc)[:1000]
        if notification.attempts >= max_attempts:
            notification.status = "failed"
        logger.warning(
            "Notification %s (%s to %s) failed on attempt %s: %s",
            notification.notification_id,
            notification.notification_type,
            notification.recipient_role,
            notification.attempts,
            exc,
        )
        delivered = False
    else:
        notification.status = "sent"
        notification.sent_at = utc_now()
        notification.last_error = None
        delivered = True

    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to record delivery state for notification %s", notification.notification_id)
    return delivered


def dispatch(notifications: Iterable[Notification]) -> int:
    """Deliver notifications created by an already-committed transition."""
    sink = get_sink()
    return sum(1 for notification in list(notifications) if deliver(notification, sink))


def dispatch_pending(limit: int = 100) -> tuple[int, int]:
    """Retry pending outbox rows. Returns ``(sent, still_unsent)``."""
    pending = db.session.scalars(
        select(Notification)
        .where(Notification.status == "pending")
        .order_by(Notification.created_at)
        .limit(limit)
    ).all()
    sent = dispatch(pending)
    return sent, len(pending) - sent
