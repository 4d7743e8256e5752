# Overview: Request decorators for API routes (authentication).

from functools import wraps
from flask import request, jsonify, g

from .errors import Unauthenticated
from .services import session_service


def require_auth(f):
    """
    Require authentication and establish branch scope.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated Staff object
    - g.branch_id: The session's branch (None for super admins)
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired, or revoked token
    - Staff account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify(Unauthenticated("Authentication required").to_dict()), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify(Unauthenticated("Invalid or expired token").to_dict()), 401

        g.current_user = context.staff
        g.branch_id = context.branch_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function
