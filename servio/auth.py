"""Bearer tokens and the request guards built on them."""
from __future__ import annotations

import secrets
import time
from datetime import timedelta
from functools import wraps

import httpx
from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import AuthError, PermissionDeniedError
from .extensions import db
from .models import User

REGISTRATION_TOKEN_TTL = timedelta(hours=24)
SESSION_TOKEN_TTL = timedelta(days=7)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def build_token(user: User, ttl: timedelta = SESSION_TOKEN_TTL) -> str:
    payload = {"user_id": user.user_id, "role": user.role, "ttl": int(ttl.total_seconds())}
    return _serializer().dumps(payload)


def decode_token(token: str) -> dict[str, object]:
    """Return the token payload or raise ``AuthError``.

    The serializer only knows the issue time, so the per-token lifetime is
    carried in the payload and checked here.
    """
    try:
        payload, issued_at = _serializer().loads(
            token,
            max_age=int(SESSION_TOKEN_TTL.total_seconds()),
            return_timestamp=True,
        )
    except SignatureExpired:
        raise AuthError("Token has expired") from None
    except BadSignature:
        raise AuthError("Invalid token") from None

    if not isinstance(payload, dict) or not payload.get("user_id"):
        raise AuthError("Invalid token format")

    ttl = int(payload.get("ttl") or SESSION_TOKEN_TTL.total_seconds())
    if time.time() - issued_at.timestamp() > ttl:
        raise AuthError("Token has expired")
    return payload


def _bearer_token() -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
        raise AuthError("No token provided")
    return auth_header[7:].strip()


def current_user() -> User:
    payload = decode_token(_bearer_token())
    user = db.session.get(User, int(payload["user_id"]))
    if user is None:
        raise AuthError("Invalid user")
    return user


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        g.current_user = current_user()
        return view(*args, **kwargs)

    return wrapper


def roles_required(*roles: str):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user = current_user()
            if user.role not in roles:
                raise PermissionDeniedError(
                    "Access denied. Admin privileges required."
                    if roles == ("admin",)
                    else "Access denied for this account type."
                )
            g.current_user = user
            return view(*args, **kwargs)

        return wrapper

    return decorator


admin_required = roles_required("admin")


def generate_verification_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def verify_google_credential(credential: str) -> dict[str, object]:
    """Validate a Google ID token and return its claims."""
    client_id = current_app.config.get("GOOGLE_CLIENT_ID")
    if not client_id:
        raise AuthError("Google sign-in is not configured")

    try:
        response = httpx.get(GOOGLE_TOKENINFO_URL, params={"id_token": credential}, timeout=10)
    except httpx.HTTPError as exc:
        current_app.logger.warning("Google token verification failed: %s", exc)
        raise AuthError("Invalid Google credential") from None

    if response.status_code != 200:
        raise AuthError("Invalid Google credential")

    claims = response.json()
    if claims.get("aud") != client_id or not claims.get("email"):
        raise AuthError("Invalid Google credential")
    return claims
