"""Database models for the Servio marketplace backend."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from .extensions import db


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def cents_to_units(cents: int | None) -> float:
    return (cents or 0) / 100.0


ROLES = ("customer", "provider", "agent", "admin")
BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
PAYMENT_METHODS = ("card", "upi", "qr", "wallet", "pay_later")


# Qualifying services for each agent.
agent_services = db.Table(
    "agent_services",
    db.Column("agent_id", db.Integer, db.ForeignKey("agents.agent_id"), primary_key=True),
    db.Column("service_id", db.Integer, db.ForeignKey("services.service_id"), primary_key=True),
)


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(
        db.Enum(
            *ROLES,
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="customer",
    )
    phone = db.Column(db.String(30))
    location = db.Column(db.String(150), nullable=False, default="Not specified")
    avatar = db.Column(db.String(500))

    # Professional (provider) profile
    service_categories = db.Column(db.JSON, nullable=True, default=list)
    experience = db.Column(db.String(255))
    description = db.Column(db.Text)
    availability = db.Column(db.String(255))
    hourly_rate = db.Column(db.String(50))
    approval_status = db.Column(
        db.Enum(
            *APPROVAL_STATUSES,
            name="approval_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=True,
    )

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    auth_account = db.relationship("AuthAccount", back_populates="user", uselist=False)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
            "location": self.location,
        }

    def to_dict(self) -> dict[str, object]:
        data = self.to_dict_basic()
        data["avatar"] = self.avatar
        data["created_at"] = _iso(self.created_at)
        if self.role == "provider":
            data.update(
                {
                    "service_categories": self.service_categories or [],
                    "experience": self.experience,
                    "description": self.description,
                    "availability": self.availability,
                    "hourly_rate": self.hourly_rate,
                    "approval_status": self.approval_status,
                    "is_verified": self.approval_status == "approved",
                }
            )
        return data


class AuthAccount(db.Model):
    __tablename__ = "auth_accounts"

    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    password_hash = db.Column(db.String(255), nullable=False)
    last_login_at = db.Column(db.DateTime)
    # One-time code for password reset / change
    verification_code = db.Column(db.String(10))
    verification_code_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="auth_account")

    def clear_verification_code(self) -> None:
        self.verification_code = None
        self.verification_code_expires_at = None


class Service(db.Model):
    """Catalog entry offered by a provider."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    title = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    category = db.Column(db.String(100), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    image = db.Column(db.String(500))
    location = db.Column(db.String(150))
    rating = db.Column(db.Float, nullable=False, default=0)
    reviews = db.Column(db.Integer, nullable=False, default=0)
    popularity = db.Column(db.Integer, nullable=False, default=0)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    provider = db.relationship("User")

    __table_args__ = (
        db.CheckConstraint("price_cents >= 0", name="ck_service_price_non_negative"),
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "price": cents_to_units(self.price_cents),
            "price_cents": self.price_cents,
            "image": self.image,
            "location": self.location,
            "rating": self.rating,
            "reviews": self.reviews,
            "popularity": self.popularity,
            "availability": bool(self.is_available),
            "provider": {
                "id": self.provider.user_id,
                "name": self.provider.name,
                "avatar": self.provider.avatar,
                "location": self.provider.location,
            } if self.provider else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Agent(db.Model):
    """Staff member assignable to fulfil confirmed bookings."""

    __tablename__ = "agents"

    agent_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30), nullable=False)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    rating = db.Column(db.Float, nullable=False, default=0)
    total_bookings = db.Column(db.Integer, nullable=False, default=0)
    completed_bookings = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")
    services = db.relationship("Service", secondary=agent_services, backref="agents")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.agent_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "services": [service.service_id for service in self.services],
            "availability": bool(self.is_available),
            "rating": self.rating or 0,
            "total_bookings": self.total_bookings or 0,
            "completed_bookings": self.completed_bookings or 0,
        }


class PaymentIntent(db.Model):
    """One attempted payment, linked to at most one booking."""

    __tablename__ = "payment_intents"

    payment_intent_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    transaction_id = db.Column(db.String(64), unique=True, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    method = db.Column(
        db.Enum(
            *PAYMENT_METHODS,
            name="payment_method",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    status = db.Column(
        db.Enum(
            *PAYMENT_STATUSES,
            name="payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    due_date = db.Column(db.DateTime)
    upi_id = db.Column(db.String(100))
    # Track payment gateway identifier (e.g. Stripe payment intent id)
    gateway_payment_id = db.Column(db.String(255), nullable=True, unique=True)
    gateway_details = db.Column(db.JSON, nullable=True, default=dict)
    # Cart captured at order time for gateway-driven booking creation
    cart = db.Column(db.JSON, nullable=True)
    # Back-reference set once a booking is created from this intent
    booking_id = db.Column(db.Integer, nullable=True, unique=True)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")
    booking = db.relationship(
        "Booking",
        primaryjoin="foreign(PaymentIntent.booking_id) == Booking.booking_id",
        viewonly=True,
    )

    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payment_amount_positive"),
    )

    def to_dict_summary(self) -> dict[str, object]:
        return {
            "id": self.payment_intent_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "amount": cents_to_units(self.amount_cents),
            "payment_method": self.method,
        }

    def to_dict(self) -> dict[str, object]:
        data = self.to_dict_summary()
        data.update(
            {
                "user_id": self.user_id,
                "amount_cents": self.amount_cents,
                "currency": self.currency,
                "due_date": _iso(self.due_date),
                "booking_id": self.booking_id,
                "completed_at": _iso(self.completed_at),
                "created_at": _iso(self.created_at),
            }
        )
        return data


class Booking(db.Model):
    """Booking created from a completed payment intent."""

    __tablename__ = "bookings"

    booking_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    payment_intent_id = db.Column(
        db.Integer, db.ForeignKey("payment_intents.payment_intent_id"), nullable=False, unique=True
    )
    status = db.Column(
        db.Enum(
            *BOOKING_STATUSES,
            name="booking_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    total_cents = db.Column(db.Integer, nullable=False)
    booked_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    scheduled_at = db.Column(db.DateTime, nullable=False)
    notes = db.Column(db.Text, nullable=False, default="")

    # Assigned agent snapshot
    agent_id = db.Column(db.Integer, db.ForeignKey("agents.agent_id"), nullable=True)
    agent_name = db.Column(db.String(100))
    agent_phone = db.Column(db.String(30))
    agent_email = db.Column(db.String(255))
    agent_assigned_at = db.Column(db.DateTime)

    cancellation_reason = db.Column(db.Text, nullable=False, default="")
    cancelled_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user = db.relationship("User")
    agent = db.relationship("Agent")
    payment = db.relationship("PaymentIntent", foreign_keys=[payment_intent_id])
    items = db.relationship(
        "BookingItem",
        back_populates="booking",
        order_by="BookingItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.Index("ix_bookings_user_status", "user_id", "status"),
        db.Index("ix_bookings_agent_status", "agent_id", "status"),
        db.Index("ix_bookings_status", "status"),
        db.Index("ix_bookings_scheduled_at", "scheduled_at"),
    )

    @validates("total_cents")
    def _freeze_total(self, key: str, value: int) -> int:
        if self.total_cents is not None and value != self.total_cents:
            raise ValueError("booking total is immutable once set")
        return value

    def agent_snapshot(self) -> dict[str, object] | None:
        if self.agent_id is None:
            return None
        return {
            "id": self.agent_id,
            "name": self.agent_name,
            "phone": self.agent_phone,
            "email": self.agent_email,
            "assigned_at": _iso(self.agent_assigned_at),
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_id,
            "user_id": self.user_id,
            "user": {
                "id": self.user.user_id,
                "name": self.user.name,
                "email": self.user.email,
                "phone": self.user.phone,
            } if self.user else None,
            "services": [item.to_dict() for item in self.items],
            "total_amount": cents_to_units(self.total_cents),
            "total_cents": self.total_cents,
            "payment": self.payment.to_dict_summary() if self.payment else None,
            "status": self.status,
            "booking_date": _iso(self.booked_at),
            "scheduled_date": _iso(self.scheduled_at),
            "notes": self.notes,
            "agent": self.agent_snapshot(),
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }


class BookingItem(db.Model):
    """Line item snapshot owned by a booking."""

    __tablename__ = "booking_items"

    booking_item_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    service_ref = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    booking = db.relationship("Booking", back_populates="items")

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_booking_item_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_booking_item_price_non_negative"),
    )

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict[str, object]:
        return {
            "service_id": self.service_ref,
            "name": self.name,
            "price": cents_to_units(self.unit_price_cents),
            "quantity": self.quantity,
        }


class PaymentMethod(db.Model):
    """Saved cards. Only a hash and the last four digits are stored."""

    __tablename__ = "payment_methods"

    payment_method_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    card_number_hash = db.Column(db.String(255), nullable=False)
    card_holder_name = db.Column(db.String(255), nullable=False)
    card_number_last_four = db.Column(db.String(4), nullable=False)
    card_brand = db.Column(db.String(50), nullable=False)
    expiry_month = db.Column(db.String(2), nullable=False)
    expiry_year = db.Column(db.String(4), nullable=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_method_id,
            "card_holder_name": self.card_holder_name,
            "card_number_last_four": self.card_number_last_four,
            "card_brand": self.card_brand,
            "expiry_month": self.expiry_month,
            "expiry_year": self.expiry_year,
            "is_default": bool(self.is_default),
            "created_at": _iso(self.created_at),
        }


class Wallet(db.Model):
    __tablename__ = "wallets"

    wallet_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, unique=True)
    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    entries = db.relationship("WalletEntry", order_by="WalletEntry.created_at.desc()")

    __table_args__ = (
        db.CheckConstraint("balance_cents >= 0", name="ck_wallet_balance_non_negative"),
    )


class WalletEntry(db.Model):
    __tablename__ = "wallet_entries"

    wallet_entry_id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.wallet_id"), nullable=False)
    kind = db.Column(
        db.Enum("credit", "debit", name="wallet_entry_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255))
    payment_intent_id = db.Column(db.Integer, db.ForeignKey("payment_intents.payment_intent_id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.kind,
            "amount": cents_to_units(self.amount_cents),
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


class RewardPoints(db.Model):
    """Reward point balance per account."""

    __tablename__ = "reward_points"

    reward_points_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, unique=True)
    points_balance = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    entries = db.relationship(
        "RewardEntry",
        primaryjoin="RewardPoints.user_id == foreign(RewardEntry.user_id)",
        order_by="RewardEntry.created_at.desc()",
        viewonly=True,
    )


class RewardEntry(db.Model):
    """Reward point movements. At most one earn entry per payment intent."""

    __tablename__ = "reward_entries"

    reward_entry_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    payment_intent_id = db.Column(
        db.Integer, db.ForeignKey("payment_intents.payment_intent_id"), nullable=True, unique=True
    )
    kind = db.Column(
        db.Enum("earn", "redeem", name="reward_entry_kind", native_enum=False, validate_strings=True),
        nullable=False,
    )
    points = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.kind,
            "points": self.points,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


class Notification(db.Model):
    """Outbox row for an email notification."""

    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=True)
    recipient_email = db.Column(db.String(255), nullable=False)
    recipient_role = db.Column(
        db.Enum(
            "customer",
            "company",
            "agent",
            "provider",
            name="recipient_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    notification_type = db.Column(
        db.Enum(
            "booking_created",
            "booking_confirmed",
            "booking_cancelled",
            "booking_rescheduled",
            "booking_completed",
            "password_reset",
            "professional_registered",
            "professional_status",
            name="notification_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    subject = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)
    status = db.Column(
        db.Enum("pending", "sent", "failed", name="notification_status", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="pending",
        default="pending",
    )
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    sent_at = db.Column(db.DateTime)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "recipient_email": self.recipient_email,
            "recipient_role": self.recipient_role,
            "notification_type": self.notification_type,
            "subject": self.subject,
            "status": self.status,
            "attempts": self.attempts,
            "created_at": _iso(self.created_at),
            "sent_at": _iso(self.sent_at),
        }
