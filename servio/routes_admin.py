"""Administrative routes: booking queue, agent pool and professional approval."""
from __future__ import annotations

import math

from flask import Blueprint, current_app, request
from sqlalchemy import func, or_, select

from . import notifications
from .auth import admin_required
from .errors import NotFoundError, ValidationError
from .extensions import db
from .models import APPROVAL_STATUSES, BOOKING_STATUSES, Agent, Booking, Service, User
from .routes import json_body, ok
from .validation import parse_choice, parse_datetime, parse_positive_int, require_fields, string_field
from .workflow import BookingWorkflow

bp_admin = Blueprint("admin", __name__, url_prefix="/admin")

MAX_PAGE_SIZE = 100


@bp_admin.get("/pending-bookings")
@admin_required
def pending_bookings():
    bookings = db.session.scalars(
        select(Booking).where(Booking.status == "pending").order_by(Booking.booked_at)
    ).all()
    return ok([booking.to_dict() for booking in bookings])


@bp_admin.get("/available-agents")
@admin_required
def available_agents():
    """List available agents, best track record first.
    ---
    tags:
      - Admin
    parameters:
      - name: serviceId
        in: query
        type: integer
        description: Only agents qualified for this service
    responses:
      200:
        description: Agents sorted by rating, then completed bookings
    """
    service_id = request.args.get("serviceId")
    agents = BookingWorkflow(db.session).available_agents(
        parse_positive_int(service_id, field="service id") if service_id else None
    )
    return ok([agent.to_dict() for agent in agents])


@bp_admin.post("/confirm-booking/<int:booking_id>")
@admin_required
def confirm_booking(booking_id: int):
    """Assign an agent to a pending booking.
    ---
    tags:
      - Admin
    parameters:
      - name: booking_id
        in: path
        type: integer
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [agentId]
          properties:
            agentId:
              type: integer
    responses:
      200:
        description: Booking confirmed with the agent's details
      400:
        description: Booking not pending or agent unavailable
      404:
        description: Booking or agent not found
    """
    payload = json_body()
    require_fields(payload, "agentId")
    agent_id = parse_positive_int(payload["agentId"], field="agent id")
    booking = BookingWorkflow(db.session).confirm(booking_id, agent_id)
    return ok(booking.to_dict(), message="Booking confirmed and agent assigned successfully")


@bp_admin.get("/booking/<int:booking_id>")
@admin_required
def get_booking(booking_id: int):
    return ok(BookingWorkflow(db.session).get_booking(booking_id).to_dict())


@bp_admin.post("/booking/<int:booking_id>/cancel")
@admin_required
def cancel_booking(booking_id: int):
    payload = json_body()
    reason = string_field(payload, "reason")
    if not reason:
        raise ValidationError("Cancellation reason is required")
    booking = BookingWorkflow(db.session).cancel(booking_id, reason)
    return ok(booking.to_dict(), message="Booking cancelled successfully")


@bp_admin.post("/booking/<int:booking_id>/complete")
@admin_required
def complete_booking(booking_id: int):
    booking = BookingWorkflow(db.session).complete(booking_id)
    return ok(booking.to_dict(), message="Booking marked as completed")


@bp_admin.get("/bookings")
@admin_required
def list_bookings():
    """Paginated booking search.
    ---
    tags:
      - Admin
    parameters:
      - name: status
        in: query
        type: string
      - name: page
        in: query
        type: integer
        default: 1
      - name: limit
        in: query
        type: integer
        default: 10
      - name: search
        in: query
        type: string
        description: Customer name or email
      - name: startDate
        in: query
        type: string
      - name: endDate
        in: query
        type: string
    responses:
      200:
        description: Bookings and a pagination block
    """
    args = request.args
    page = parse_positive_int(args.get("page", 1), field="page")
    limit = min(parse_positive_int(args.get("limit", 10), field="limit"), MAX_PAGE_SIZE)

    query = select(Booking).join(User, User.user_id == Booking.user_id)
    status = args.get("status")
    if status:
        query = query.where(Booking.status == parse_choice(status, BOOKING_STATUSES))
    search = (args.get("search") or "").strip()
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    if args.get("startDate"):
        query = query.where(Booking.booked_at >= parse_datetime(args["startDate"], field="start date"))
    if args.get("endDate"):
        query = query.where(Booking.booked_at <= parse_datetime(args["endDate"], field="end date"))

    total = db.session.scalar(select(func.count()).select_from(query.subquery()))
    bookings = db.session.scalars(
        query.order_by(Booking.booked_at.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return ok(
        {
            "bookings": [booking.to_dict() for booking in bookings],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
        }
    )


# --- agents ----------------------------------------------------------------


@bp_admin.post("/agents")
@admin_required
def create_agent():
    payload = json_body()
    require_fields(payload, "name", "email", "phone")

    service_ids = payload.get("serviceIds") or []
    if not isinstance(service_ids, list):
        raise ValidationError("serviceIds must be a list")
    services = []
    for raw_id in service_ids:
        service = db.session.get(Service, parse_positive_int(raw_id, field="service id"))
        if service is None:
            raise NotFoundError(f"Service {raw_id} not found")
        services.append(service)

    rating = payload.get("rating", 0)
    try:
        rating = float(rating)
    except (TypeError, ValueError):
        raise ValidationError("Invalid rating") from None
    if not 0 <= rating <= 5:
        raise ValidationError("Rating must be between 0 and 5")

    agent = Agent(
        name=string_field(payload, "name"),
        email=string_field(payload, "email").lower(),
        phone=str(payload["phone"]).strip(),
        user_id=payload.get("userId"),
        rating=rating,
        is_available=bool(payload.get("availability", True)),
        services=services,
    )
    db.session.add(agent)
    db.session.commit()
    current_app.logger.info("Agent %s added", agent.agent_id)
    return ok(agent.to_dict(), 201, message="Agent created successfully")


@bp_admin.put("/agents/<int:agent_id>/availability")
@admin_required
def set_agent_availability(agent_id: int):
    payload = json_body()
    if not isinstance(payload.get("availability"), bool):
        raise ValidationError("availability must be true or false")
    agent = BookingWorkflow(db.session).get_agent(agent_id)
    agent.is_available = payload["availability"]
    db.session.commit()
    return ok(agent.to_dict(), message="Agent availability updated")


# --- professionals ---------------------------------------------------------


@bp_admin.get("/professionals")
@admin_required
def list_professionals():
    query = select(User).where(User.role == "provider")
    status = request.args.get("status")
    if status:
        query = query.where(User.approval_status == parse_choice(status, APPROVAL_STATUSES))
    professionals = db.session.scalars(query.order_by(User.created_at.desc())).all()
    return ok([user.to_dict() for user in professionals])


@bp_admin.put("/professionals/<int:user_id>/status")
@admin_required
def update_professional_status(user_id: int):
    payload = json_body()
    status = payload.get("status")
    if status not in APPROVAL_STATUSES:
        raise ValidationError("Status must be pending, approved or rejected")

    user = db.session.get(User, user_id)
    if user is None or user.role != "provider":
        raise NotFoundError("Professional not found")

    user.approval_status = status
    notification = notifications.queue_professional_status(user)
    db.session.commit()
    if notification is not None:
        notifications.dispatch([notification])

    current_app.logger.info("Professional %s status set to %s", user_id, status)
    return ok(user.to_dict(), message="Professional status updated successfully")
