"""
Authentication Routes (JSON)

Provides:
- POST /auth/login
- POST /auth/logout
- GET  /auth/me
- GET  /auth/csrf-token

Rules:
- Only active users may log in.
- Credentials are validated via password hash.
- Session cookies are issued by Flask-Login; mutating API calls must carry
  the token from /auth/csrf-token in the X-CSRFToken header.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...errors import ValidationError
from ...models import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Authenticate a user.

    Body: {"email": "...", "password": "..."}
    """
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = User.query.filter(User.email == email).first()

    if not user or not user.check_password(password):
        logger.info("Failed login for %s", email)
        return jsonify({"error": "Unauthorized", "message": "Invalid email or password.", "details": {}}), 401

    if not user.is_active:
        return jsonify({"error": "Unauthorized", "message": "The account is inactive.", "details": {}}), 401

    login_user(user)
    logger.info("User %s logged in", user.id)
    return jsonify({"user": user.to_dict()})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"message": "Logged out."})


# ============================================================
# SESSION INFO
# ============================================================

@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})
