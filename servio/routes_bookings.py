"""Payment ledger and customer booking routes."""
from __future__ import annotations

import stripe
from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import select

from .auth import login_required
from .errors import NotFoundError, PermissionDeniedError
from .extensions import db
from .ledger import PaymentLedger
from .models import BOOKING_STATUSES, Booking, PaymentIntent
from .routes import json_body, ok
from .validation import parse_cart_items, parse_choice, require_fields, string_field
from .workflow import BookingWorkflow

bp_bookings = Blueprint("bookings", __name__)


def _ledger() -> PaymentLedger:
    return PaymentLedger(db.session, BookingWorkflow(db.session))


# --- payments --------------------------------------------------------------


@bp_bookings.post("/payments/create-order")
@login_required
def create_order():
    """Open a payment intent.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [amount, paymentMethod]
          properties:
            amount:
              type: number
            currency:
              type: string
            paymentMethod:
              type: string
              enum: [card, upi, qr, wallet, pay_later]
            dueDate:
              type: string
              format: date-time
            cartItems:
              type: array
              items:
                type: object
    responses:
      201:
        description: Pending intent with its transaction id (plus UPI link and QR, or Stripe client secret)
      400:
        description: Invalid amount or payment method
    """
    payload = json_body()
    require_fields(payload, "amount", "paymentMethod")
    data = _ledger().create_order(
        g.current_user,
        payload["amount"],
        str(payload["paymentMethod"]).strip().lower(),
        currency=payload.get("currency"),
        due_date=payload.get("dueDate"),
        cart_items=payload.get("cartItems"),
    )
    return ok(data, 201)


@bp_bookings.post("/payments/create-qr-payment")
@login_required
def create_qr_payment():
    payload = json_body()
    require_fields(payload, "amount")
    data = _ledger().create_qr_payment(g.current_user, payload["amount"], payload.get("currency"))
    return ok(data, 201)


@bp_bookings.post("/payments/verify-payment")
@login_required
def verify_payment():
    """Mark a pending intent completed on the client's word and book its cart.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    responses:
      200:
        description: Payment, booking (when a cart was given or stored) and points earned
      400:
        description: Invalid cart, date, or insufficient wallet balance
      403:
        description: Client verification disabled
      404:
        description: Payment not found
    """
    if not current_app.config.get("ALLOW_CLIENT_VERIFICATION"):
        raise PermissionDeniedError("Client-side payment verification is disabled")
    payload = json_body()
    require_fields(payload, "transactionId")
    data = _ledger().verify(
        g.current_user,
        str(payload["transactionId"]),
        cart_items=payload.get("cartItems") or payload.get("services"),
        scheduled_date=payload.get("scheduledDate"),
        notes=string_field(payload, "notes"),
    )
    return ok(data, message="Payment verified successfully")


@bp_bookings.post("/payments/webhook")
def payment_webhook():
    """Stripe webhook endpoint.
    ---
    tags:
      - Payments
    parameters:
      - name: Stripe-Signature
        in: header
        required: true
        type: string
    responses:
      200:
        description: Event received
      400:
        description: Invalid payload or signature
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

    if not webhook_secret:
        current_app.logger.error("Stripe webhook secret not configured - webhooks will not be processed")
        return jsonify({"received": True}), 200

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        current_app.logger.warning("Invalid webhook payload")
        return jsonify({"success": False, "error": "Invalid payload"}), 400
    except stripe.error.SignatureVerificationError:
        current_app.logger.warning("Invalid signature for webhook")
        return jsonify({"success": False, "error": "Invalid signature"}), 400

    _ledger().handle_gateway_event(event)
    return jsonify({"received": True}), 200


@bp_bookings.get("/payments/status/<transaction_id>")
@login_required
def payment_status(transaction_id: str):
    return ok(_ledger().status(g.current_user, transaction_id))


@bp_bookings.post("/payments/save-card")
@login_required
def save_card():
    card = _ledger().save_card(g.current_user, json_body())
    return ok(card.to_dict(), 201, message="Card saved successfully")


@bp_bookings.get("/payments/cards")
@login_required
def list_cards():
    return ok([card.to_dict() for card in _ledger().cards(g.current_user)])


@bp_bookings.get("/payments/wallet")
@login_required
def get_wallet():
    return ok(_ledger().wallet(g.current_user))


@bp_bookings.get("/payments/reward-points")
@login_required
def get_reward_points():
    return ok(_ledger().reward_points(g.current_user))


# --- bookings --------------------------------------------------------------


@bp_bookings.post("/bookings/create")
@login_required
def create_booking():
    """Create a booking from a completed payment that has none yet.
    ---
    tags:
      - Bookings
    security:
      - Bearer: []
    responses:
      201:
        description: Booking created in pending status
      400:
        description: Payment not completed, already linked, or invalid cart/date
      404:
        description: Payment not found
    """
    payload = json_body()
    require_fields(payload, "services", "scheduledDate")
    user = g.current_user

    if payload.get("paymentId"):
        payment = db.session.get(PaymentIntent, payload.get("paymentId"))
    elif payload.get("transactionId"):
        payment = db.session.scalar(
            select(PaymentIntent).where(PaymentIntent.transaction_id == str(payload["transactionId"]))
        )
    else:
        payment = None
    if payment is None or payment.user_id != user.user_id:
        raise NotFoundError("Payment not found")

    booking = BookingWorkflow(db.session).create_booking(
        user=user,
        payment=payment,
        items=parse_cart_items(payload["services"]),
        scheduled_date=payload["scheduledDate"],
        notes=string_field(payload, "notes"),
    )
    return ok(booking.to_dict(), 201, message="Booking created successfully")


@bp_bookings.get("/bookings/my-bookings")
@login_required
def my_bookings():
    query = select(Booking).where(Booking.user_id == g.current_user.user_id)
    status = request.args.get("status")
    if status:
        query = query.where(Booking.status == parse_choice(status, BOOKING_STATUSES))
    bookings = db.session.scalars(query.order_by(Booking.booked_at.desc())).all()
    return ok([booking.to_dict() for booking in bookings])


@bp_bookings.get("/bookings/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    booking = BookingWorkflow(db.session).get_booking(booking_id, g.current_user)
    return ok(booking.to_dict())


@bp_bookings.post("/bookings/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    payload = json_body()
    booking = BookingWorkflow(db.session).cancel(booking_id, string_field(payload, "reason"), user=g.current_user)
    return ok(booking.to_dict(), message="Booking cancelled successfully")


@bp_bookings.post("/bookings/<int:booking_id>/reschedule")
@login_required
def reschedule_booking(booking_id: int):
    payload = json_body()
    booking = BookingWorkflow(db.session).reschedule(booking_id, payload.get("scheduledDate"), user=g.current_user)
    return ok(booking.to_dict(), message="Booking rescheduled successfully")
