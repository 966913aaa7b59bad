"""HTTP routes for accounts, profiles and the service catalog."""
from __future__ import annotations

import secrets
from datetime import timedelta

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from . import notifications
from .auth import (
    REGISTRATION_TOKEN_TTL,
    SESSION_TOKEN_TTL,
    build_token,
    generate_verification_code,
    login_required,
    roles_required,
    verify_google_credential,
)
from .errors import AuthError, NotFoundError, NotificationError, PermissionDeniedError, ValidationError
from .extensions import db
from .models import BOOKING_STATUSES, AuthAccount, Booking, PaymentIntent, Service, User, utc_now
from .validation import parse_amount_cents, parse_choice, require_fields, string_field

bp = Blueprint("api", __name__)

MIN_PASSWORD_LENGTH = 6


def ok(data: object = None, status: int = 200, message: str | None = None):
    body: dict[str, object] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _find_user(email: str) -> User | None:
    return db.session.scalar(select(User).where(User.email == email.strip().lower()))


def _create_account(user: User, password: str) -> User:
    db.session.add(user)
    db.session.flush()
    db.session.add(AuthAccount(user_id=user.user_id, password_hash=generate_password_hash(password)))
    return user


# --- health ----------------------------------------------------------------


@bp.get("/health")
def health_check():
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health():
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# --- authentication -------------------------------------------------------


@bp.post("/auth/register")
def register_user():
    """Register a customer or provider account.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [name, email, password, phone]
          properties:
            name:
              type: string
            email:
              type: string
            password:
              type: string
            phone:
              type: string
            role:
              type: string
              enum: [customer, provider]
    responses:
      201:
        description: Account created, returns a 24 hour token
      400:
        description: Invalid payload or email already registered
    """
    payload = json_body()
    require_fields(payload, "name", "email", "password", "phone")

    email = string_field(payload, "email").lower()
    password = string_field(payload, "password", strip=False)
    role = (string_field(payload, "role") or "customer").lower()
    if role not in ("customer", "provider"):
        raise ValidationError("Role must be customer or provider")
    _check_password(password)
    if _find_user(email):
        raise ValidationError("User already exists")

    user = _create_account(
        User(
            name=string_field(payload, "name"),
            email=email,
            phone=string_field(payload, "phone"),
            role=role,
            location=string_field(payload, "location") or "Not specified",
        ),
        password,
    )
    db.session.commit()
    current_app.logger.info("Registered %s account %s", role, user.user_id)

    token = build_token(user, REGISTRATION_TOKEN_TTL)
    return ok({"token": token, "user": user.to_dict()}, 201)


@bp.post("/auth/login")
def login():
    """Authenticate by email and password.
    ---
    tags:
      - Authentication
    responses:
      200:
        description: Login successful, returns a 7 day token
      401:
        description: Invalid credentials
    """
    payload = json_body()
    require_fields(payload, "email", "password")

    user = _find_user(string_field(payload, "email"))
    password = string_field(payload, "password", strip=False)
    account = user.auth_account if user else None
    if account is None or not check_password_hash(account.password_hash, password):
        raise AuthError("Invalid credentials")

    account.last_login_at = utc_now()
    db.session.commit()

    return ok({"token": build_token(user, SESSION_TOKEN_TTL), "user": user.to_dict()})


@bp.post("/auth/google")
def google_login():
    payload = json_body()
    require_fields(payload, "credential")
    claims = verify_google_credential(string_field(payload, "credential"))

    email = str(claims["email"]).lower()
    user = _find_user(email)
    if user is None:
        user = _create_account(
            User(
                name=str(claims.get("name") or email.split("@")[0]),
                email=email,
                role="customer",
                avatar=claims.get("picture"),
            ),
            secrets.token_urlsafe(32),
        )
        current_app.logger.info("Created account %s from Google sign-in", email)
    elif user.auth_account is not None:
        user.auth_account.last_login_at = utc_now()
    db.session.commit()

    return ok({"token": build_token(user, SESSION_TOKEN_TTL), "user": user.to_dict()})


def _send_code(user: User) -> None:
    """Store a fresh verification code and email it before returning.

    The caller is waiting on the email, so a failed delivery clears the
    code and surfaces as ``NotificationError``.
    """
    account = user.auth_account
    if account is None:
        raise NotFoundError("User not found")
    code = generate_verification_code()
    account.verification_code = code
    account.verification_code_expires_at = utc_now() + timedelta(
        minutes=current_app.config["RESET_CODE_TTL_MINUTES"]
    )
    notification = notifications.queue_password_code(user, code)
    db.session.commit()

    if notification is None or not notifications.deliver(notification):
        account.clear_verification_code()
        if notification is not None:
            notification.status = "failed"
        db.session.commit()
        raise NotificationError("Failed to send verification code")


def _check_code(user: User | None, code: object) -> AuthAccount:
    account = user.auth_account if user else None
    if (
        account is None
        or not account.verification_code
        or str(code or "").strip() != account.verification_code
        or account.verification_code_expires_at is None
        or account.verification_code_expires_at < utc_now()
    ):
        raise ValidationError("Invalid or expired verification code")
    return account


@bp.post("/auth/forgot-password")
def forgot_password():
    payload = json_body()
    require_fields(payload, "email")
    user = _find_user(string_field(payload, "email"))
    if user is None:
        raise NotFoundError("User not found")
    _send_code(user)
    return ok(message="Verification code sent to your email")


@bp.post("/auth/verify-reset-code")
def verify_reset_code():
    payload = json_body()
    require_fields(payload, "email", "code")
    _check_code(_find_user(string_field(payload, "email")), payload["code"])
    return ok({"verified": True}, message="Code verified successfully")


@bp.post("/auth/reset-password")
def reset_password():
    payload = json_body()
    require_fields(payload, "email", "code", "newPassword")
    user = _find_user(string_field(payload, "email"))
    account = _check_code(user, payload["code"])
    new_password = string_field(payload, "newPassword", strip=False)
    _check_password(new_password)

    account.password_hash = generate_password_hash(new_password)
    account.clear_verification_code()
    db.session.commit()

    return ok({"token": build_token(user, SESSION_TOKEN_TTL), "user": user.to_dict()}, message="Password reset successfully")


@bp.post("/auth/register-professional")
def register_professional():
    """Register a provider account awaiting admin approval.
    ---
    tags:
      - Authentication
    responses:
      201:
        description: Application received
      400:
        description: Invalid payload or email already registered
    """
    payload = json_body()
    require_fields(payload, "name", "email", "password", "phone", "serviceCategories")

    email = string_field(payload, "email").lower()
    password = string_field(payload, "password", strip=False)
    categories = payload["serviceCategories"]
    if isinstance(categories, str):
        categories = [c.strip() for c in categories.split(",") if c.strip()]
    if not isinstance(categories, list) or not categories:
        raise ValidationError("At least one service category is required")
    _check_password(password)
    if _find_user(email):
        raise ValidationError("User already exists")

    user = _create_account(
        User(
            name=string_field(payload, "name"),
            email=email,
            phone=string_field(payload, "phone"),
            role="provider",
            location=string_field(payload, "location") or "Not specified",
            service_categories=[str(c) for c in categories],
            experience=string_field(payload, "experience") or None,
            description=string_field(payload, "description") or None,
            availability=string_field(payload, "availability") or None,
            hourly_rate=str(payload["hourlyRate"]) if payload.get("hourlyRate") is not None else None,
            approval_status="pending",
        ),
        password,
    )
    queued = notifications.queue_professional_registered(user)
    db.session.commit()
    notifications.dispatch(queued)

    token = build_token(user, REGISTRATION_TOKEN_TTL)
    return ok({"token": token, "user": user.to_dict()}, 201, message="Registration submitted for review")


# --- users -----------------------------------------------------------------


@bp.get("/users/profile")
@login_required
def get_profile():
    return ok(g.current_user.to_dict())


@bp.put("/users/profile")
@login_required
def update_profile():
    payload = json_body()
    user = g.current_user

    if "email" in payload:
        email = string_field(payload, "email").lower()
        if not email:
            raise ValidationError("Email cannot be empty")
        other = _find_user(email)
        if other is not None and other.user_id != user.user_id:
            raise ValidationError("Email is already in use")
        user.email = email
    for field in ("name", "phone", "location"):
        if field in payload:
            value = string_field(payload, field)
            if field == "name" and not value:
                raise ValidationError("Name cannot be empty")
            if field == "phone":
                value = value or None
            setattr(user, field, value)
    if "avatar" in payload:
        user.avatar = payload.get("avatar")

    db.session.commit()
    return ok(user.to_dict(), message="Profile updated successfully")


@bp.get("/users/bookings")
@login_required
def list_user_bookings():
    query = select(Booking).where(Booking.user_id == g.current_user.user_id)
    status = request.args.get("status")
    if status:
        query = query.where(Booking.status == parse_choice(status, BOOKING_STATUSES))
    bookings = db.session.scalars(query.order_by(Booking.booked_at.desc())).all()
    return ok([booking.to_dict() for booking in bookings])


@bp.get("/users/payments")
@login_required
def list_user_payments():
    intents = db.session.scalars(
        select(PaymentIntent)
        .where(PaymentIntent.user_id == g.current_user.user_id)
        .order_by(PaymentIntent.created_at.desc())
    ).all()
    return ok([intent.to_dict() for intent in intents])


@bp.post("/users/initiate-password-change")
@login_required
def initiate_password_change():
    _send_code(g.current_user)
    return ok(message="Verification code sent to your email")


@bp.post("/users/verify-code")
@login_required
def verify_code():
    payload = json_body()
    require_fields(payload, "code")
    _check_code(g.current_user, payload["code"])
    return ok({"verified": True}, message="Code verified successfully")


@bp.post("/users/change-password")
@login_required
def change_password():
    payload = json_body()
    require_fields(payload, "currentPassword", "newPassword", "code")
    user = g.current_user
    account = _check_code(user, payload["code"])
    if not check_password_hash(account.password_hash, string_field(payload, "currentPassword", strip=False)):
        raise ValidationError("Current password is incorrect")
    new_password = string_field(payload, "newPassword", strip=False)
    _check_password(new_password)

    account.password_hash = generate_password_hash(new_password)
    account.clear_verification_code()
    db.session.commit()
    return ok(message="Password changed successfully")


# --- catalog ---------------------------------------------------------------


def _get_service(service_id: int) -> Service:
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFoundError("Service not found")
    return service


def _apply_service_fields(service: Service, payload: dict) -> None:
    for key, attr in (("title", "title"), ("category", "category")):
        if key in payload:
            value = string_field(payload, key)
            if not value:
                raise ValidationError(f"{key} cannot be empty")
            setattr(service, attr, value)
    for key in ("description", "image", "location"):
        if key in payload:
            setattr(service, key, payload.get(key))
    if "price" in payload:
        service.price_cents = parse_amount_cents(payload.get("price"), field="price", allow_zero=True)
    if "rating" in payload:
        try:
            rating = float(payload.get("rating"))
        except (TypeError, ValueError):
            raise ValidationError("Invalid rating") from None
        if not 0 <= rating <= 5:
            raise ValidationError("Rating must be between 0 and 5")
        service.rating = rating
    if "availability" in payload:
        service.is_available = bool(payload.get("availability"))


@bp.get("/services")
def list_services():
    """List catalog services.
    ---
    tags:
      - Services
    parameters:
      - name: category
        in: query
        type: string
      - name: available
        in: query
        type: boolean
      - name: search
        in: query
        type: string
        description: Partial match on title or description
    responses:
      200:
        description: Matching services, most popular first
    """
    query = select(Service)
    category = request.args.get("category", "").strip()
    if category:
        query = query.where(Service.category == category)
    available = request.args.get("available")
    if available is not None:
        query = query.where(Service.is_available.is_(available.lower() in ("1", "true", "yes")))
    search = request.args.get("search", "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Service.title.ilike(pattern), Service.description.ilike(pattern)))

    services = db.session.scalars(query.order_by(Service.popularity.desc(), Service.service_id)).all()
    return ok([service.to_dict() for service in services])


@bp.get("/services/<int:service_id>")
def get_service(service_id: int):
    return ok(_get_service(service_id).to_dict())


@bp.post("/services")
@roles_required("provider", "admin")
def create_service():
    payload = json_body()
    require_fields(payload, "title", "category", "price")
    user = g.current_user

    provider_id = user.user_id
    if user.role == "admin" and payload.get("providerId"):
        provider = db.session.get(User, payload.get("providerId"))
        if provider is None:
            raise NotFoundError("Provider not found")
        provider_id = provider.user_id

    service = Service(provider_id=provider_id, title="", category="", price_cents=0)
    _apply_service_fields(service, payload)
    db.session.add(service)
    db.session.commit()
    current_app.logger.info("Service %s created by user %s", service.service_id, user.user_id)
    return ok(service.to_dict(), 201)


def _owned_service(service_id: int) -> Service:
    service = _get_service(service_id)
    user = g.current_user
    if user.role != "admin" and service.provider_id != user.user_id:
        raise PermissionDeniedError("You can only modify your own services")
    return service


@bp.put("/services/<int:service_id>")
@roles_required("provider", "admin")
def update_service(service_id: int):
    service = _owned_service(service_id)
    _apply_service_fields(service, json_body())
    db.session.commit()
    return ok(service.to_dict())


@bp.delete("/services/<int:service_id>")
@roles_required("provider", "admin")
def delete_service(service_id: int):
    service = _owned_service(service_id)
    service.agents.clear()
    db.session.delete(service)
    db.session.commit()
    return ok(message="Service deleted successfully")
