"""Shared fixtures: an in-memory app per test plus small data factories."""
from __future__ import annotations

import itertools
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from werkzeug.security import generate_password_hash

# Ensure the project root is available on sys.path so tests can import the package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from servio import create_app  # noqa: E402
from servio.auth import build_token  # noqa: E402
from servio.config import TestingConfig  # noqa: E402
from servio.extensions import db  # noqa: E402
from servio.models import Agent, AuthAccount, PaymentIntent, Service, User, utc_now  # noqa: E402
from servio.validation import parse_cart_items  # noqa: E402
from servio.workflow import BookingWorkflow  # noqa: E402

PASSWORD = "Secret123!"

SCENARIO_CART = [
    {"service": "Cleaning", "price": 200, "qty": 2},
    {"service": "Plumbing", "price": 100, "qty": 1},
]


def future(days: int = 3) -> str:
    return (utc_now() + timedelta(days=days)).isoformat()


class RecordingSink:
    """Notification sink that keeps messages in memory and can be told to fail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.sent.append((to, subject, html))

    @property
    def recipients(self) -> list[str]:
        return [to for to, _, _ in self.sent]


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sink(app):
    recording = RecordingSink()
    app.extensions["servio.notification_sink"] = recording
    return recording


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role: str = "customer", email: str | None = None, password: str = PASSWORD, **fields) -> int:
        with app.app_context():
            user = User(
                name=fields.pop("name", f"{role.title()} {next(counter)}"),
                email=email or f"{role}{next(counter)}@example.com",
                role=role,
                phone=fields.pop("phone", "5550100"),
                **fields,
            )
            db.session.add(user)
            db.session.flush()
            db.session.add(AuthAccount(user_id=user.user_id, password_hash=generate_password_hash(password)))
            db.session.commit()
            return user.user_id

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user_id: int, ttl: timedelta | None = None) -> dict[str, str]:
        with app.app_context():
            user = db.session.get(User, user_id)
            token = build_token(user, ttl) if ttl is not None else build_token(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def make_agent(app):
    def _make(
        name: str = "Agent Smith",
        *,
        available: bool = True,
        rating: float = 4.0,
        total_bookings: int = 0,
        completed_bookings: int = 0,
        service_ids: tuple[int, ...] = (),
    ) -> int:
        with app.app_context():
            agent = Agent(
                name=name,
                email=f"{name.lower().replace(' ', '.')}@agents.test",
                phone="5550199",
                is_available=available,
                rating=rating,
                total_bookings=total_bookings,
                completed_bookings=completed_bookings,
                services=[db.session.get(Service, sid) for sid in service_ids],
            )
            db.session.add(agent)
            db.session.commit()
            return agent.agent_id

    return _make


@pytest.fixture
def make_service(app):
    def _make(provider_id: int, title: str = "Deep Cleaning", price_cents: int = 20000, category: str = "cleaning") -> int:
        with app.app_context():
            service = Service(provider_id=provider_id, title=title, category=category, price_cents=price_cents)
            db.session.add(service)
            db.session.commit()
            return service.service_id

    return _make


@pytest.fixture
def make_intent(app):
    counter = itertools.count(1)

    def _make(
        user_id: int,
        amount_cents: int = 50000,
        *,
        status: str = "completed",
        method: str = "upi",
        cart: list | None = None,
    ) -> tuple[int, str]:
        with app.app_context():
            intent = PaymentIntent(
                user_id=user_id,
                transaction_id=f"TXN_TEST_{next(counter)}",
                amount_cents=amount_cents,
                method=method,
                status=status,
                cart=cart,
                completed_at=utc_now() if status == "completed" else None,
            )
            db.session.add(intent)
            db.session.commit()
            return intent.payment_intent_id, intent.transaction_id

    return _make


@pytest.fixture
def make_booking(app, make_user, make_intent):
    """Create a pending booking for the scenario cart; returns ``(booking_id, user_id)``."""

    def _make(user_id: int | None = None) -> tuple[int, int]:
        user_id = user_id or make_user()
        intent_id, _ = make_intent(user_id, 50000)
        with app.app_context():
            booking = BookingWorkflow().create_booking(
                user=db.session.get(User, user_id),
                payment=db.session.get(PaymentIntent, intent_id),
                items=parse_cart_items(SCENARIO_CART),
                scheduled_date=future(),
            )
            return booking.booking_id, user_id

    return _make


@pytest.fixture
def admin_headers(make_user, auth_headers):
    return auth_headers(make_user("admin", email="admin@servio.test"))
