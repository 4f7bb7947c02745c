from __future__ import annotations

import hmac
from typing import Iterable

from flask import Blueprint, current_app, jsonify, request, session

from app.errors import PermissionError as AppPermissionError
from app.errors import ValidationError
from app.policies import DEFAULT_ROLE, VALID_ROLES


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

_PUBLIC_PATHS = {"/api/auth/login", "/api/auth/logout", "/health", "/metrics"}


def register_auth(app) -> None:
    app.register_blueprint(auth_bp)

    @app.before_request
    def _require_login():
        if not app.config.get("AUTH_ENABLED", True):
            return None
        if app.config.get("TESTING"):
            return None

        path = request.path or "/"
        if path in _PUBLIC_PATHS or not path.startswith("/api/"):
            return None
        if session.get("user_email"):
            return None

        raise AppPermissionError(
            code="auth_required",
            message_key="auth_required",
            http_status=401,
            critical=False,
        )


@auth_bp.route("/login", methods=["POST"])
def login():
    body = request.get_json(silent=True) or {}
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")
    if not email or not password:
        raise ValidationError(
            code="auth_missing_credentials",
            message_key="auth_invalid_credentials",
            http_status=400,
            critical=False,
        )

    user = _find_user(email, password, current_app.config.get("APP_USERS"))
    if not user:
        raise AppPermissionError(
            code="auth_invalid_credentials",
            message_key="auth_invalid_credentials",
            http_status=401,
            critical=False,
        )

    session["user_email"] = user["email"]
    session["display_name"] = user["display_name"]
    session["tenant_id"] = user["tenant_id"]
    session["user_role"] = user["role"]
    return jsonify(
        {
            "email": user["email"],
            "display_name": user["display_name"],
            "tenant_id": user["tenant_id"],
            "role": user["role"],
        }
    )


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


def _find_user(email: str, password: str, raw_users: object) -> dict | None:
    for user in _parse_users(raw_users):
        if user["email"] == email and hmac.compare_digest(user["password"], password):
            return user
    return None


def _parse_users(raw_users: object) -> Iterable[dict]:
    if not raw_users:
        return []
    if isinstance(raw_users, str):
        entries = []
        for chunk in raw_users.replace("\n", ",").replace(";", ",").split(","):
            entry = chunk.strip()
            if entry:
                entries.append(entry)
    elif isinstance(raw_users, (list, tuple, set)):
        entries = [str(item).strip() for item in raw_users if str(item).strip()]
    else:
        return []

    users = []
    for entry in entries:
        parts = [part.strip() for part in entry.split(":")]
        if len(parts) < 3:
            continue
        email, password, tenant_id = parts[0].lower(), parts[1], parts[2]
        display_name = parts[3] if len(parts) > 3 and parts[3] else email.split("@")[0]
        role = parts[4].lower() if len(parts) > 4 and parts[4] else DEFAULT_ROLE
        if role not in VALID_ROLES:
            role = DEFAULT_ROLE
        users.append(
            {
                "email": email,
                "password": password,
                "tenant_id": tenant_id,
                "display_name": display_name,
                "role": role,
            }
        )
    return users
