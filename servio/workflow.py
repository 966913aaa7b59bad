"""Booking state machine.

    pending -> confirmed -> completed
    pending | confirmed -> cancelled

Every transition is a single ``UPDATE bookings ... WHERE booking_id = :id
AND status IN (:expected)`` whose row count decides the winner, so two
admins racing to confirm the same booking cannot both succeed. The agent
counter and outbox writes share that transaction. Nothing outside this
module assigns ``Booking.status``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Sequence

from flask import current_app
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from . import notifications
from .errors import NotFoundError, StateConflictError, ValidationError
from .extensions import db
from .models import Agent, Booking, BookingItem, Notification, PaymentIntent, Service, User, agent_services, utc_now
from .validation import LineItem, parse_future_datetime

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "confirmed")

# Allowed (from, to) pairs; rescheduling keeps the status and is not listed.
TRANSITIONS = {
    ("pending", "confirmed"),
    ("pending", "cancelled"),
    ("confirmed", "cancelled"),
    ("confirmed", "completed"),
}


def can_transition(current: str, target: str) -> bool:
    return (current, target) in TRANSITIONS


class BookingWorkflow:
    def __init__(self, session: Session | None = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.session = session or db.session
        self.clock = clock
        self._outbox: list[Notification] = []

    # --- transaction boundary -------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Commit everything done inside the block, then deliver its notifications.

        Delivery only starts once the commit has succeeded and its failures
        are swallowed by ``notifications.deliver``.
        """
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            self._outbox.clear()
            raise
        queued, self._outbox = self._outbox, []
        if queued:
            notifications.dispatch(queued)

    def _queue(self, queued: Sequence[Notification]) -> None:
        self._outbox.extend(queued)

    # --- lookups ----------------------------------------------------------

    def get_booking(self, booking_id: int, user: User | None = None) -> Booking:
        """Fetch a booking; when ``user`` is given, other users' bookings are invisible."""
        booking = self.session.get(Booking, booking_id)
        if booking is None or (user is not None and booking.user_id != user.user_id):
            raise NotFoundError("Booking not found")
        return booking

    def get_agent(self, agent_id: int) -> Agent:
        agent = self.session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError("Agent not found")
        return agent

    def available_agents(self, service_id: int | None = None) -> list[Agent]:
        """Available agents, best track record first."""
        query = select(Agent).where(Agent.is_available.is_(True))
        if service_id is not None:
            query = query.join(agent_services, agent_services.c.agent_id == Agent.agent_id).where(
                agent_services.c.service_id == service_id
            )
        query = query.order_by(Agent.rating.desc(), Agent.completed_bookings.desc(), Agent.agent_id)
        return list(self.session.scalars(query).all())

    # --- creation ---------------------------------------------------------

    def default_schedule(self) -> datetime:
        return self.clock() + timedelta(days=current_app.config["DEFAULT_SCHEDULE_DAYS"])

    def snapshot_items(self, items: Sequence[LineItem]) -> list[BookingItem]:
        """Copy line items onto the booking.

        Items that reference a catalog service take its current title and
        price; later catalog edits never reach the booking.
        """
        snapshots = []
        for position, item in enumerate(items):
            name, price = item.name, item.unit_price_cents
            if item.service_ref.isdigit():
                service = self.session.get(Service, int(item.service_ref))
                if service is not None:
                    name, price = service.title, service.price_cents
            snapshots.append(
                BookingItem(
                    position=position,
                    service_ref=item.service_ref,
                    name=name,
                    unit_price_cents=price,
                    quantity=item.quantity,
                )
            )
        return snapshots

    def open_booking(
        self,
        *,
        user: User,
        payment: PaymentIntent,
        items: Sequence[LineItem],
        scheduled_at: datetime,
        notes: str = "",
    ) -> Booking:
        """Create a pending booking inside the caller's ``atomic`` block."""
        if payment.user_id != user.user_id:
            raise NotFoundError("Payment not found")
        if payment.status != "completed":
            raise StateConflictError("Payment must be completed before a booking can be created")
        if payment.booking_id is not None:
            raise StateConflictError("Payment is already linked to a booking")
        if not items:
            raise ValidationError("Services are required")
        if scheduled_at <= self.clock():
            raise ValidationError("Scheduled date must be in the future")

        line_items = self.snapshot_items(items)
        total_cents = sum(item.subtotal_cents for item in line_items)
        if total_cents != payment.amount_cents:
            raise ValidationError("Cart total does not match the payment amount")

        booking = Booking(
            user_id=user.user_id,
            payment_intent_id=payment.payment_intent_id,
            status="pending",
            total_cents=total_cents,
            scheduled_at=scheduled_at,
            notes=notes or "",
            items=line_items,
        )
        self.session.add(booking)
        self.session.flush()

        linked = self.session.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.payment_intent_id == payment.payment_intent_id,
                PaymentIntent.status == "completed",
                PaymentIntent.booking_id.is_(None),
            )
            .values(booking_id=booking.booking_id)
            .execution_options(synchronize_session="fetch")
        )
        if linked.rowcount != 1:
            raise StateConflictError("Payment is already linked to a booking")

        self._queue(notifications.queue_booking_created(booking))
        logger.info(
            "Booking %s created from payment %s (%s items, total %s)",
            booking.booking_id,
            payment.transaction_id,
            len(line_items),
            total_cents,
        )
        return booking

    def create_booking(
        self,
        *,
        user: User,
        payment: PaymentIntent,
        items: Sequence[LineItem],
        scheduled_date: object,
        notes: str = "",
    ) -> Booking:
        scheduled_at = parse_future_datetime(scheduled_date, self.clock())
        with self.atomic():
            booking = self.open_booking(
                user=user, payment=payment, items=items, scheduled_at=scheduled_at, notes=notes
            )
        return booking

    # --- transitions ------------------------------------------------------

    def _transition(self, booking: Booking, expected: Sequence[str], conflict: str, **values: object) -> None:
        """Compare-and-swap on the booking row."""
        result = self.session.execute(
            update(Booking)
            .where(Booking.booking_id == booking.booking_id, Booking.status.in_(tuple(expected)))
            .values(updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(conflict)
        self.session.refresh(booking)

    def _adjust_agent(self, agent_id: int, column: str, delta: int) -> None:
        counter = getattr(Agent, column)
        new_value = counter + delta if delta >= 0 else case((counter + delta > 0, counter + delta), else_=0)
        self.session.execute(
            update(Agent)
            .where(Agent.agent_id == agent_id)
            .values({column: new_value})
            .execution_options(synchronize_session=False)
        )
        agent = self.session.get(Agent, agent_id)
        if agent is not None:
            self.session.refresh(agent)

    def confirm(self, booking_id: int, agent_id: int) -> Booking:
        """Assign an available agent to a pending booking."""
        booking = self.get_booking(booking_id)
        if booking.status != "pending":
            raise StateConflictError("Only pending bookings can be confirmed")
        agent = self.get_agent(agent_id)
        if not agent.is_available:
            raise StateConflictError("Agent is not available")

        with self.atomic():
            now = self.clock()
            self._transition(
                booking,
                ("pending",),
                "Only pending bookings can be confirmed",
                status="confirmed",
                agent_id=agent.agent_id,
                agent_name=agent.name,
                agent_phone=agent.phone,
                agent_email=agent.email,
                agent_assigned_at=now,
            )
            self._adjust_agent(agent.agent_id, "total_bookings", 1)
            self._queue(notifications.queue_booking_confirmed(booking, agent))

        logger.info("Booking %s confirmed with agent %s", booking.booking_id, agent.agent_id)
        return booking

    def cancel(self, booking_id: int, reason: str | None = None, user: User | None = None) -> Booking:
        booking = self.get_booking(booking_id, user)
        if booking.status == "cancelled":
            raise StateConflictError("Booking is already cancelled")
        if booking.status == "completed":
            raise StateConflictError("Cannot cancel a completed booking")

        with self.atomic():
            self._transition(
                booking,
                OPEN_STATUSES,
                "Only pending or confirmed bookings can be cancelled",
                status="cancelled",
                cancellation_reason=(reason or "").strip(),
                cancelled_at=self.clock(),
            )
            # agent_id is re-read after the swap, so a concurrent confirm is accounted for.
            if booking.agent_id is not None:
                self._adjust_agent(booking.agent_id, "total_bookings", -1)
            self._queue(notifications.queue_booking_cancelled(booking))

        logger.info("Booking %s cancelled", booking.booking_id)
        return booking

    def reschedule(self, booking_id: int, scheduled_date: object, user: User | None = None) -> Booking:
        if scheduled_date in (None, ""):
            raise ValidationError("Scheduled date is required")
        new_date = parse_future_datetime(scheduled_date, self.clock(), field="new scheduled date")
        booking = self.get_booking(booking_id, user)
        if booking.status not in OPEN_STATUSES:
            raise StateConflictError("Only pending or confirmed bookings can be rescheduled")

        with self.atomic():
            self._transition(
                booking,
                OPEN_STATUSES,
                "Only pending or confirmed bookings can be rescheduled",
                scheduled_at=new_date,
            )
            self._queue(notifications.queue_booking_rescheduled(booking))
        return booking

    def complete(self, booking_id: int) -> Booking:
        booking = self.get_booking(booking_id)
        if booking.status != "confirmed":
            raise StateConflictError("Only confirmed bookings can be completed")

        with self.atomic():
            self._transition(
                booking,
                ("confirmed",),
                "Only confirmed bookings can be completed",
                status="completed",
                completed_at=self.clock(),
            )
            if booking.agent_id is not None:
                self._adjust_agent(booking.agent_id, "completed_bookings", 1)
            self._queue(notifications.queue_booking_completed(booking))

        logger.info("Booking %s completed", booking.booking_id)
        return booking
