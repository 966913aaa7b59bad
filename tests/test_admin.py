"""Tests for the admin booking queue, agent pool and professional approval."""
from __future__ import annotations

from unittest.mock import patch

from servio.extensions import db
from servio.models import Agent, Booking, Notification, User


def test_admin_routes_reject_non_admins(client, make_user, auth_headers) -> None:
    headers = auth_headers(make_user("customer"))

    response = client.get("/admin/pending-bookings", headers=headers)

    assert response.status_code == 403
    assert response.get_json() == {"success": False, "error": "Access denied. Admin privileges required."}
    assert client.get("/admin/pending-bookings").status_code == 401


def test_pending_bookings_lists_only_pending(app, client, make_booking, make_agent, admin_headers) -> None:
    pending_id, _ = make_booking()
    confirmed_id, _ = make_booking()
    agent_id = make_agent()
    client.post(f"/admin/confirm-booking/{confirmed_id}", json={"agentId": agent_id}, headers=admin_headers)

    response = client.get("/admin/pending-bookings", headers=admin_headers)

    assert [b["id"] for b in response.get_json()["data"]] == [pending_id]


def test_available_agents_endpoint(client, make_agent, admin_headers) -> None:
    make_agent("Busy", available=False, rating=5.0)
    make_agent("Solid", rating=4.1, completed_bookings=3)
    make_agent("Star", rating=4.9)

    response = client.get("/admin/available-agents", headers=admin_headers)

    assert [a["name"] for a in response.get_json()["data"]] == ["Star", "Solid"]


def test_confirm_booking_errors(client, make_booking, make_agent, admin_headers) -> None:
    booking_id, _ = make_booking()
    unavailable = make_agent(available=False)

    assert client.post(f"/admin/confirm-booking/{booking_id}", json={}, headers=admin_headers).status_code == 400
    missing_agent = client.post(f"/admin/confirm-booking/{booking_id}", json={"agentId": 999}, headers=admin_headers)
    assert missing_agent.status_code == 404
    assert missing_agent.get_json()["error"] == "Agent not found"
    busy = client.post(f"/admin/confirm-booking/{booking_id}", json={"agentId": unavailable}, headers=admin_headers)
    assert busy.status_code == 400
    assert busy.get_json()["error"] == "Agent is not available"
    missing_booking = client.post("/admin/confirm-booking/999", json={"agentId": unavailable}, headers=admin_headers)
    assert missing_booking.status_code == 404


def test_notification_failure_does_not_block_confirmation(app, client, make_booking, make_agent, admin_headers, sink) -> None:
    booking_id, _ = make_booking()
    agent_id = make_agent()
    sink.fail = True

    response = client.post(f"/admin/confirm-booking/{booking_id}", json={"agentId": agent_id}, headers=admin_headers)

    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Booking, booking_id).status == "confirmed"
        rows = Notification.query.filter_by(booking_id=booking_id, notification_type="booking_confirmed").all()
        assert len(rows) == 3
        assert all(row.status == "pending" and row.attempts == 1 for row in rows)
        assert "SMTP server unavailable" in rows[0].last_error


def test_admin_cancel_requires_reason(app, client, make_booking, make_agent, admin_headers) -> None:
    booking_id, _ = make_booking()
    agent_id = make_agent()
    client.post(f"/admin/confirm-booking/{booking_id}", json={"agentId": agent_id}, headers=admin_headers)

    assert client.post(f"/admin/booking/{booking_id}/cancel", json={}, headers=admin_headers).status_code == 400
    response = client.post(
        f"/admin/booking/{booking_id}/cancel", json={"reason": "agent sick"}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.get_json()["data"]["cancellation_reason"] == "agent sick"
    with app.app_context():
        assert db.session.get(Agent, agent_id).total_bookings == 0


def test_admin_complete_booking(app, client, make_booking, make_agent, admin_headers) -> None:
    booking_id, _ = make_booking()
    agent_id = make_agent()

    early = client.post(f"/admin/booking/{booking_id}/complete", headers=admin_headers)
    assert early.status_code == 400

    client.post(f"/admin/confirm-booking/{booking_id}", json={"agentId": agent_id}, headers=admin_headers)
    response = client.post(f"/admin/booking/{booking_id}/complete", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "completed"
    with app.app_context():
        agent = db.session.get(Agent, agent_id)
        assert (agent.total_bookings, agent.completed_bookings) == (1, 1)


def test_admin_get_booking(client, make_booking, admin_headers) -> None:
    booking_id, user_id = make_booking()

    response = client.get(f"/admin/booking/{booking_id}", headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["data"]["user"]["id"] == user_id
    assert client.get("/admin/booking/4040", headers=admin_headers).status_code == 404


def test_admin_bookings_pagination_and_search(client, make_user, make_booking, admin_headers) -> None:
    alice = make_user(name="Alice Jones", email="alice@example.com")
    for _ in range(3):
        make_booking(alice)
    make_booking(make_user(name="Bob Stone", email="bob@example.com"))

    page = client.get("/admin/bookings?limit=2&page=2", headers=admin_headers).get_json()["data"]
    assert page["pagination"] == {"total": 4, "page": 2, "limit": 2, "totalPages": 2}
    assert len(page["bookings"]) == 2

    searched = client.get("/admin/bookings?search=alice", headers=admin_headers).get_json()["data"]
    assert searched["pagination"]["total"] == 3

    none = client.get("/admin/bookings?status=completed", headers=admin_headers).get_json()["data"]
    assert none["pagination"] == {"total": 0, "page": 1, "limit": 10, "totalPages": 0}

    assert client.get("/admin/bookings?status=bogus", headers=admin_headers).status_code == 400
    assert client.get("/admin/bookings?startDate=yesterday", headers=admin_headers).status_code == 400


def test_create_agent_and_toggle_availability(app, client, make_user, make_service, admin_headers) -> None:
    service_id = make_service(make_user("provider"))

    response = client.post(
        "/admin/agents",
        json={"name": "Ravi", "email": "Ravi@Agents.test", "phone": "5550111", "serviceIds": [service_id], "rating": 4.5},
        headers=admin_headers,
    )
    assert response.status_code == 201
    agent = response.get_json()["data"]
    assert agent["email"] == "ravi@agents.test"
    assert agent["services"] == [service_id]

    filtered = client.get(f"/admin/available-agents?serviceId={service_id}", headers=admin_headers)
    assert [a["id"] for a in filtered.get_json()["data"]] == [agent["id"]]

    toggled = client.put(
        f"/admin/agents/{agent['id']}/availability", json={"availability": False}, headers=admin_headers
    )
    assert toggled.get_json()["data"]["availability"] is False
    assert client.get("/admin/available-agents", headers=admin_headers).get_json()["data"] == []

    bad = client.put(f"/admin/agents/{agent['id']}/availability", json={"availability": "no"}, headers=admin_headers)
    assert bad.status_code == 400


def test_professional_approval_flow(app, client, make_user, admin_headers, sink) -> None:
    pro_id = make_user("provider", email="pro@example.com", approval_status="pending")
    make_user("provider", email="done@example.com", approval_status="approved")

    listed = client.get("/admin/professionals?status=pending", headers=admin_headers).get_json()["data"]
    assert [p["email"] for p in listed] == ["pro@example.com"]

    response = client.put(f"/admin/professionals/{pro_id}/status", json={"status": "approved"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json()["data"]["is_verified"] is True
    assert sink.recipients == ["pro@example.com"]
    with app.app_context():
        assert db.session.get(User, pro_id).approval_status == "approved"

    invalid = client.put(f"/admin/professionals/{pro_id}/status", json={"status": "maybe"}, headers=admin_headers)
    assert invalid.status_code == 400


def test_unexpected_error_returns_generic_500(app, client, admin_headers) -> None:
    with patch("servio.routes_admin.BookingWorkflow.available_agents", side_effect=RuntimeError("boom")):
        response = client.get("/admin/available-agents", headers=admin_headers)

    assert response.status_code == 500
    assert response.get_json() == {"success": False, "error": "Something went wrong!"}


def test_professionals_reject_unknown_status_filter(client, admin_headers) -> None:
    response = client.get("/admin/professionals?status=bogus", headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "Invalid status"}
