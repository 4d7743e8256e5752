# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/rentaldesk/routes/auth.py
"""
Authentication API routes

Staff accounts are created by administrators (CLI: flask staff create);
there is no self-registration.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import Unauthenticated, ValidationFailed
from ..services import auth_service
from ..services import session_service
from ..decorators import require_auth


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate staff and create a session token.

    The token must be sent as "Authorization: Bearer <token>" afterwards.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")

        if not all([username, password]):
            return jsonify(ValidationFailed("username and password required").to_dict()), 400

        staff = auth_service.authenticate(username, password)
        if not staff:
            return jsonify(Unauthenticated("Invalid credentials").to_dict()), 401

        session, token = session_service.create_session(
            staff_id=staff.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({
            "token": token,
            "staff": staff.to_dict(),
            "branch": staff.branch.to_dict() if staff.branch else None,
            "expires_at": session.to_dict()["expires_at"],
        }), 200

    except ValueError as e:
        return jsonify(Unauthenticated(str(e)).to_dict()), 401
    except Exception:
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    token = request.headers.get("Authorization", "").split(" ", 1)[1]
    session_service.revoke_session(token)
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    staff = g.current_user
    return jsonify({
        "staff": staff.to_dict(),
        "branch": staff.branch.to_dict() if staff.branch else None,
    }), 200
