"""Tests for registration, login, Google sign-in and the token guard."""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import PASSWORD
from servio.auth import REGISTRATION_TOKEN_TTL, build_token, decode_token
from servio.errors import AuthError
from servio.extensions import db
from servio.models import AuthAccount, User


def test_register_customer(app, client) -> None:
    response = client.post(
        "/auth/register",
        json={"name": "Priya", "email": "Priya@Example.com", "password": PASSWORD, "phone": "9876543210"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["success"] is True
    assert body["data"]["token"]
    assert body["data"]["user"]["email"] == "priya@example.com"
    assert body["data"]["user"]["role"] == "customer"
    with app.app_context():
        payload = decode_token(body["data"]["token"])
        assert payload["ttl"] == int(REGISTRATION_TOKEN_TTL.total_seconds())


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": "A", "email": "a@example.com", "password": PASSWORD}, "phone is required"),
        ({"name": "A", "email": "a@example.com", "password": "123", "phone": "1"}, "Password must be at least 6 characters"),
        ({"name": "A", "email": "a@example.com", "password": PASSWORD, "phone": "1", "role": "admin"}, "Role must be customer or provider"),
    ],
)
def test_register_validation(client, payload, message) -> None:
    response = client.post("/auth/register", json=payload)

    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": message}


def test_register_duplicate_email(client, make_user) -> None:
    make_user(email="taken@example.com")

    response = client.post(
        "/auth/register",
        json={"name": "B", "email": "taken@example.com", "password": PASSWORD, "phone": "1"},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "User already exists"


def test_login_success_records_last_login(app, client, make_user) -> None:
    user_id = make_user(email="login@example.com")

    response = client.post("/auth/login", json={"email": "login@example.com", "password": PASSWORD})

    assert response.status_code == 200
    assert response.get_json()["data"]["user"]["id"] == user_id
    with app.app_context():
        assert db.session.get(AuthAccount, user_id).last_login_at is not None


def test_login_invalid_password(client, make_user) -> None:
    make_user(email="wrong@example.com")

    response = client.post("/auth/login", json={"email": "wrong@example.com", "password": "BadPass"})

    assert response.status_code == 401
    assert response.get_json() == {"success": False, "error": "Invalid credentials"}


def test_login_unknown_email(client) -> None:
    response = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})

    assert response.status_code == 401


def test_expired_and_tampered_tokens_are_rejected(app, client, make_user, auth_headers) -> None:
    user_id = make_user()
    expired = auth_headers(user_id, ttl=timedelta(seconds=-1))

    response = client.get("/users/profile", headers=expired)
    assert response.status_code == 401
    assert response.get_json()["error"] == "Token has expired"

    response = client.get("/users/profile", headers={"Authorization": "Bearer not-a-token"})
    assert response.get_json()["error"] == "Invalid token"


def test_token_for_deleted_user_is_invalid(app) -> None:
    with app.app_context():
        token = build_token(User(user_id=999, name="Ghost", email="g@example.com", role="customer"))
    client = app.test_client()

    response = client.get("/users/profile", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid user"


def test_decode_token_rejects_foreign_secret(app) -> None:
    with app.app_context():
        token = build_token(User(user_id=1, name="X", email="x@example.com", role="customer"))
        app.config["SECRET_KEY"] = "rotated"
        with pytest.raises(AuthError, match="Invalid token"):
            decode_token(token)


def _google_response(status_code: int = 200, **claims) -> MagicMock:
    response = MagicMock(status_code=status_code)
    response.json.return_value = claims
    return response


def test_google_sign_in_creates_customer(app, client) -> None:
    claims = {"aud": "test-google-client", "email": "New.User@gmail.com", "name": "New User", "picture": "http://img"}
    with patch("servio.auth.httpx.get", return_value=_google_response(**claims)) as mock_get:
        response = client.post("/auth/google", json={"credential": "id-token"})

    assert response.status_code == 200
    user = response.get_json()["data"]["user"]
    assert user["email"] == "new.user@gmail.com"
    assert user["role"] == "customer"
    assert mock_get.call_args.kwargs["params"] == {"id_token": "id-token"}

    with patch("servio.auth.httpx.get", return_value=_google_response(**claims)):
        again = client.post("/auth/google", json={"credential": "id-token"})
    assert again.get_json()["data"]["user"]["id"] == user["id"]


def test_google_sign_in_rejects_wrong_audience(client) -> None:
    with patch("servio.auth.httpx.get", return_value=_google_response(aud="someone-else", email="x@gmail.com")):
        response = client.post("/auth/google", json={"credential": "id-token"})

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid Google credential"


def test_google_sign_in_network_failure(client) -> None:
    with patch("servio.auth.httpx.get", side_effect=httpx.ConnectError("offline")):
        response = client.post("/auth/google", json={"credential": "id-token"})

    assert response.status_code == 401


def test_register_professional(app, client, sink) -> None:
    response = client.post(
        "/auth/register-professional",
        json={
            "name": "Meera",
            "email": "meera@example.com",
            "password": PASSWORD,
            "phone": "9000000000",
            "serviceCategories": "cleaning, plumbing",
            "experience": "5 years",
            "hourlyRate": 350,
        },
    )

    assert response.status_code == 201
    user = response.get_json()["data"]["user"]
    assert user["role"] == "provider"
    assert user["approval_status"] == "pending"
    assert user["service_categories"] == ["cleaning", "plumbing"]
    assert user["hourly_rate"] == "350"
    assert sorted(sink.recipients) == ["meera@example.com", "ops@servio.test"]


def test_register_professional_requires_categories(client) -> None:
    response = client.post(
        "/auth/register-professional",
        json={"name": "M", "email": "m@example.com", "password": PASSWORD, "phone": "1", "serviceCategories": []},
    )

    assert response.status_code == 400


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": "A", "email": 12345, "password": PASSWORD, "phone": "1"}, "email must be a string"),
        ({"name": {"first": "A"}, "email": "a@example.com", "password": PASSWORD, "phone": "1"}, "name must be a string"),
        ({"name": "A", "email": "a@example.com", "password": PASSWORD, "phone": 9876543210}, "phone must be a string"),
        ({"name": "A", "email": "a@example.com", "password": 123456, "phone": "1"}, "password must be a string"),
    ],
)
def test_register_rejects_non_string_fields(client, payload, message) -> None:
    response = client.post("/auth/register", json=payload)

    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": message}


def test_login_rejects_non_string_email(client, make_user) -> None:
    make_user(email="typed@example.com")

    response = client.post("/auth/login", json={"email": 12345, "password": PASSWORD})

    assert response.status_code == 400
    assert response.get_json()["error"] == "email must be a string"


def test_register_professional_rejects_non_string_fields(client) -> None:
    response = client.post(
        "/auth/register-professional",
        json={
            "name": "Pro",
            "email": ["pro@example.com"],
            "password": PASSWORD,
            "phone": "1",
            "serviceCategories": ["Cleaning"],
        },
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "email must be a string"
