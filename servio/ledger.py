"""Payment intents, saved cards, wallet and reward points."""
from __future__ import annotations

import base64
import io
import logging
import secrets
import time
from urllib.parse import urlencode

import qrcode
import stripe
from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from .errors import DependencyError, NotFoundError, StateConflictError, ValidationError
from .extensions import db
from .models import (
    PAYMENT_METHODS,
    Booking,
    PaymentIntent,
    PaymentMethod,
    RewardEntry,
    RewardPoints,
    User,
    Wallet,
    WalletEntry,
    utc_now,
)
from .validation import parse_amount_cents, parse_cart_items, parse_datetime, parse_future_datetime
from .workflow import BookingWorkflow

logger = logging.getLogger(__name__)

TRANSACTION_ID_ATTEMPTS = 3


def new_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"


def upi_link(upi_id: str, payee: str, amount_cents: int, currency: str, transaction_id: str) -> str:
    params = {
        "pa": upi_id,
        "pn": payee,
        "am": f"{amount_cents / 100:.2f}",
        "cu": currency,
        "tn": f"Payment for {transaction_id}",
    }
    return "upi://pay?" + urlencode(params)


def qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def card_brand(number: str) -> str:
    if number.startswith("4"):
        return "Visa"
    if number[:2] in {"51", "52", "53", "54", "55"} or 2221 <= int(number[:4]) <= 2720:
        return "Mastercard"
    if number[:2] in {"34", "37"}:
        return "American Express"
    if number.startswith(("60", "65", "81", "82", "508")):
        return "RuPay"
    return "Unknown"


def points_for(amount_cents: int) -> int:
    unit = current_app.config["REWARD_POINT_UNIT"]
    return amount_cents // (unit * 100)


class PaymentLedger:
    def __init__(self, session: Session | None = None, workflow: BookingWorkflow | None = None) -> None:
        self.session = session or db.session
        self.workflow = workflow or BookingWorkflow(self.session)

    # --- intents ----------------------------------------------------------

    def get_intent(self, user: User, transaction_id: str) -> PaymentIntent:
        intent = self.session.scalar(
            select(PaymentIntent).where(
                PaymentIntent.transaction_id == transaction_id,
                PaymentIntent.user_id == user.user_id,
            )
        )
        if intent is None:
            raise NotFoundError("Payment not found")
        return intent

    def _insert_intent(self, **values: object) -> PaymentIntent:
        for _ in range(TRANSACTION_ID_ATTEMPTS):
            intent = PaymentIntent(transaction_id=new_transaction_id(), **values)
            self.session.add(intent)
            try:
                self.session.flush()
            except IntegrityError:
                self.session.rollback()
                logger.warning("Transaction id collision for %s, retrying", intent.transaction_id)
                continue
            return intent
        raise DependencyError("Failed to create order")

    def create_order(
        self,
        user: User,
        amount: object,
        method: str,
        currency: str | None = None,
        due_date: object = None,
        cart_items: object = None,
    ) -> dict[str, object]:
        """Open a pending intent and return what the client needs to pay it."""
        amount_cents = parse_amount_cents(amount)
        if method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method")
        currency = (currency or current_app.config["DEFAULT_CURRENCY"]).upper()
        due = parse_datetime(due_date, field="due date") if due_date else None
        if cart_items:
            # validated now, stored raw for gateway-driven booking creation
            parse_cart_items(cart_items)

        upi_id = current_app.config.get("UPI_ID")
        if method in ("upi", "qr", "pay_later") and not upi_id:
            raise DependencyError("UPI payments are not configured")

        intent = self._insert_intent(
            user_id=user.user_id,
            amount_cents=amount_cents,
            currency=currency,
            method=method,
            due_date=due,
            upi_id=upi_id if method in ("upi", "qr", "pay_later") else None,
            cart=cart_items or None,
            gateway_details={},
        )
        self.session.commit()

        data: dict[str, object] = {
            "transactionId": intent.transaction_id,
            "amount": amount_cents / 100,
            "currency": currency,
            "paymentMethod": method,
            "status": intent.status,
        }
        if due is not None:
            data["dueDate"] = due.isoformat()

        if intent.upi_id:
            link = upi_link(upi_id, current_app.config["BUSINESS_NAME"], amount_cents, currency, intent.transaction_id)
            data["upiId"] = upi_id
            data["upiLink"] = link
            data["qrCode"] = qr_data_url(link)
        elif method == "card" and current_app.config.get("STRIPE_SECRET_KEY"):
            data["clientSecret"] = self._open_card_intent(intent)

        logger.info("Order %s opened for user %s (%s %s)", intent.transaction_id, user.user_id, method, amount_cents)
        return data

    def _open_card_intent(self, intent: PaymentIntent) -> str:
        stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
        try:
            gateway = stripe.PaymentIntent.create(
                amount=intent.amount_cents,
                currency=intent.currency.lower(),
                metadata={"transaction_id": intent.transaction_id, "user_id": str(intent.user_id)},
            )
        except stripe.error.StripeError as exc:
            logger.exception("Stripe API error while creating payment intent", exc_info=exc)
            self.session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == intent.payment_intent_id, PaymentIntent.status == "pending")
                .values(status="failed", gateway_details={"error": str(exc)})
            )
            self.session.commit()
            raise DependencyError("Failed to create order") from None

        intent.gateway_payment_id = gateway.id
        self.session.commit()
        return gateway.client_secret

    def create_qr_payment(self, user: User, amount: object, currency: str | None = None) -> dict[str, object]:
        if not current_app.config.get("UPI_ID"):
            raise DependencyError("UPI ID not configured")
        return self.create_order(user, amount, "qr", currency)

    def status(self, user: User, transaction_id: str) -> dict[str, object]:
        intent = self.get_intent(user, transaction_id)
        data = intent.to_dict()
        data["bookingId"] = intent.booking_id
        return data

    # --- settlement -------------------------------------------------------

    def _mark_completed(self, intent: PaymentIntent, details: dict[str, object]) -> None:
        result = self.session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.payment_intent_id == intent.payment_intent_id, PaymentIntent.status == "pending")
            .values(
                status="completed",
                completed_at=utc_now(),
                gateway_details={**(intent.gateway_details or {}), **details},
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError("Payment has already been processed")
        self.session.refresh(intent)

    def _debit_wallet(self, intent: PaymentIntent) -> None:
        wallet = self.session.scalar(select(Wallet).where(Wallet.user_id == intent.user_id))
        if wallet is None:
            raise ValidationError("Insufficient wallet balance")
        result = self.session.execute(
            update(Wallet)
            .where(Wallet.wallet_id == wallet.wallet_id, Wallet.balance_cents >= intent.amount_cents)
            .values(balance_cents=Wallet.balance_cents - intent.amount_cents, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError("Insufficient wallet balance")
        self.session.add(
            WalletEntry(
                wallet_id=wallet.wallet_id,
                kind="debit",
                amount_cents=intent.amount_cents,
                description=f"Payment {intent.transaction_id}",
                payment_intent_id=intent.payment_intent_id,
            )
        )
        self.session.refresh(wallet)

    def _grant_points(self, intent: PaymentIntent) -> int:
        """Award points for a completed intent, at most once per intent."""
        points = points_for(intent.amount_cents)
        if points <= 0:
            return 0
        already = self.session.scalar(select(RewardEntry).where(RewardEntry.payment_intent_id == intent.payment_intent_id))
        if already is not None:
            return 0

        account = self.session.scalar(select(RewardPoints).where(RewardPoints.user_id == intent.user_id))
        if account is None:
            account = RewardPoints(user_id=intent.user_id, points_balance=0)
            self.session.add(account)
            self.session.flush()

        self.session.add(
            RewardEntry(
                user_id=intent.user_id,
                payment_intent_id=intent.payment_intent_id,
                kind="earn",
                points=points,
                description=f"Earned from payment {intent.transaction_id}",
            )
        )
        self.session.execute(
            update(RewardPoints)
            .where(RewardPoints.reward_points_id == account.reward_points_id)
            .values(points_balance=RewardPoints.points_balance + points, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(account)
        return points

    def _settle(
        self,
        intent: PaymentIntent,
        raw_items: object,
        scheduled_at,
        notes: str,
        details: dict[str, object],
    ) -> tuple[int, Booking | None]:
        items = parse_cart_items(raw_items) if raw_items else None
        with self.workflow.atomic():
            self._mark_completed(intent, details)
            if intent.method == "wallet":
                self._debit_wallet(intent)
            points = self._grant_points(intent)
            booking = None
            if items:
                booking = self.workflow.open_booking(
                    user=intent.user,
                    payment=intent,
                    items=items,
                    scheduled_at=scheduled_at,
                    notes=notes,
                )
        return points, booking

    def verify(
        self,
        user: User,
        transaction_id: str,
        cart_items: object = None,
        scheduled_date: object = None,
        notes: str | None = None,
    ) -> dict[str, object]:
        """Client-asserted completion of a pending intent.

        Replaying the call for a completed intent returns the existing
        booking and grants nothing. A cart given on replay books an intent
        that was completed without one.
        """
        intent = self.get_intent(user, transaction_id)
        if intent.status in ("failed", "refunded"):
            raise StateConflictError(f"Payment is {intent.status}")

        raw_items = cart_items or intent.cart
        if scheduled_date:
            scheduled_at = parse_future_datetime(scheduled_date, self.workflow.clock())
        else:
            scheduled_at = self.workflow.default_schedule()

        points = 0
        booking = intent.booking
        if intent.status == "pending":
            try:
                points, booking = self._settle(
                    intent,
                    raw_items,
                    scheduled_at,
                    notes or "",
                    {"verifiedAt": utc_now().isoformat(), "verificationMethod": "client"},
                )
            except StateConflictError:
                # lost a race with another verification or the webhook
                self.session.refresh(intent)
                if intent.status != "completed":
                    raise
                booking = intent.booking
        elif booking is None and raw_items:
            booking = self.workflow.create_booking(
                user=user,
                payment=intent,
                items=parse_cart_items(raw_items),
                scheduled_date=scheduled_at.isoformat(),
                notes=notes or "",
            )

        self.session.refresh(intent)
        return {
            "payment": intent.to_dict(),
            "booking": booking.to_dict() if booking is not None else None,
            "pointsEarned": points,
        }

    def handle_gateway_event(self, event: dict) -> None:
        """Apply a verified Stripe webhook event."""
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}
        transaction_id = metadata.get("transaction_id")
        if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            logger.info("Ignoring webhook event %s", event_type)
            return
        if not transaction_id:
            logger.info("Webhook %s without transaction metadata; skipping", event_type)
            return

        intent = self.session.scalar(select(PaymentIntent).where(PaymentIntent.transaction_id == transaction_id))
        if intent is None:
            logger.warning("Webhook for unknown transaction %s", transaction_id)
            return
        if intent.status != "pending":
            return

        if event_type == "payment_intent.payment_failed":
            self.session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.payment_intent_id == intent.payment_intent_id, PaymentIntent.status == "pending")
                .values(status="failed", gateway_details={**(intent.gateway_details or {}), "gatewayId": data.get("id")})
            )
            self.session.commit()
            logger.info("Payment %s failed at gateway", transaction_id)
            return

        if data.get("amount") is not None and int(data["amount"]) != intent.amount_cents:
            logger.warning(
                "Webhook amount %s does not match payment %s (%s)", data.get("amount"), transaction_id, intent.amount_cents
            )
            return

        details = {"gatewayId": data.get("id"), "verificationMethod": "webhook", "verifiedAt": utc_now().isoformat()}
        try:
            self._settle(intent, intent.cart, self.workflow.default_schedule(), "", details)
        except StateConflictError:
            logger.info("Payment %s was settled concurrently", transaction_id)
        except ValidationError as exc:
            # stored cart no longer books cleanly; complete the payment alone
            logger.warning("Booking from webhook for %s failed: %s", transaction_id, exc.message)
            try:
                self._settle(intent, None, None, "", details)
            except StateConflictError:
                logger.info("Payment %s was settled concurrently", transaction_id)

    # --- cards, wallet, points -------------------------------------------

    def save_card(self, user: User, payload: dict) -> PaymentMethod:
        number = "".join(str(payload.get("cardNumber") or "").split())
        holder = (payload.get("cardHolderName") or "").strip()
        month = str(payload.get("expiryMonth") or "").strip()
        year = str(payload.get("expiryYear") or "").strip()

        if not number or not holder or not month or not year:
            raise ValidationError("All card fields are required")
        if not number.isdigit() or not 12 <= len(number) <= 19:
            raise ValidationError("Invalid card number")
        if not month.isdigit() or not 1 <= int(month) <= 12:
            raise ValidationError("Invalid expiry month")
        if not year.isdigit() or len(year) not in (2, 4):
            raise ValidationError("Invalid expiry year")
        if len(year) == 2:
            year = f"20{year}"
        now = utc_now()
        if (int(year), int(month)) < (now.year, now.month):
            raise ValidationError("Card has expired")

        is_default = bool(payload.get("isDefault"))
        if is_default:
            self.session.execute(
                update(PaymentMethod).where(PaymentMethod.user_id == user.user_id).values(is_default=False)
            )
        card = PaymentMethod(
            user_id=user.user_id,
            card_number_hash=generate_password_hash(number),
            card_holder_name=holder,
            card_number_last_four=number[-4:],
            card_brand=card_brand(number),
            expiry_month=month.zfill(2),
            expiry_year=year,
            is_default=is_default,
        )
        self.session.add(card)
        self.session.commit()
        return card

    def cards(self, user: User) -> list[PaymentMethod]:
        return list(
            self.session.scalars(
                select(PaymentMethod)
                .where(PaymentMethod.user_id == user.user_id)
                .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
            ).all()
        )

    def wallet(self, user: User) -> dict[str, object]:
        wallet = self.session.scalar(select(Wallet).where(Wallet.user_id == user.user_id))
        if wallet is None:
            return {"balance": 0.0, "currency": current_app.config["DEFAULT_CURRENCY"], "transactions": []}
        return {
            "balance": wallet.balance_cents / 100,
            "currency": current_app.config["DEFAULT_CURRENCY"],
            "transactions": [entry.to_dict() for entry in wallet.entries[:20]],
        }

    def credit_wallet(self, user: User, amount_cents: int, description: str) -> Wallet:
        wallet = self.session.scalar(select(Wallet).where(Wallet.user_id == user.user_id))
        if wallet is None:
            wallet = Wallet(user_id=user.user_id, balance_cents=0)
            self.session.add(wallet)
            self.session.flush()
        self.session.execute(
            update(Wallet)
            .where(Wallet.wallet_id == wallet.wallet_id)
            .values(balance_cents=Wallet.balance_cents + amount_cents, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        self.session.add(
            WalletEntry(wallet_id=wallet.wallet_id, kind="credit", amount_cents=amount_cents, description=description)
        )
        self.session.commit()
        self.session.refresh(wallet)
        return wallet

    def reward_points(self, user: User) -> dict[str, object]:
        account = self.session.scalar(select(RewardPoints).where(RewardPoints.user_id == user.user_id))
        if account is None:
            return {"points": 0, "transactions": []}
        return {
            "points": account.points_balance,
            "transactions": [entry.to_dict() for entry in account.entries[:20]],
        }
