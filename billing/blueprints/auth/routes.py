"""
Authentication Routes

Provides:
- POST /auth/login
- POST /auth/logout
- GET  /auth/me          (caller + allowed actions for UI filtering)
- GET  /auth/csrf-token  (token for the X-CSRFToken header)

Rules:
- Only active users may log in.
- Credentials validated via password hash.
"""

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...models import User
from ...security import allowed_actions
from ...utils import json_body


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _me_payload(user: User) -> dict:
    return {"user": user.to_dict(), "allowed_actions": allowed_actions(user.role)}


# ============================================================
# LOGIN / LOGOUT
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    data = json_body()
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        return jsonify({"error": "invalid_credentials", "message": "Invalid username or password."}), 401
    if not user.is_active:
        return jsonify({"error": "inactive_account", "message": "Account is inactive."}), 403

    login_user(user)
    return jsonify(_me_payload(user))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "logged_out"})


# ============================================================
# SESSION INFO
# ============================================================

@auth_bp.route("/me")
@login_required
def me():
    return jsonify(_me_payload(current_user))


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
