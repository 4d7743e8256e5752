# Overview: Flask API routes for dashboard operations; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import RentalError, ValidationFailed
from ..services import branch_service, expiry_service, reporting_service
from ..decorators import require_auth
from rentaldesk.time_utils import utcnow


dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api/dashboard")


@dashboard_bp.get("/stats")
@require_auth
def dashboard_stats_route():
    """Counters for the branch dashboard. Also runs the throttled expiry sweep."""
    try:
        branch_id = branch_service.resolve_branch_id(g.branch_id, request.args.get("branch_id", type=int))
        expiry_service.sweep_expired_bookings(branch_id)
        return jsonify(reporting_service.get_dashboard_stats(branch_id)), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load dashboard stats")
        return jsonify({"error": "Internal server error"}), 500


@dashboard_bp.get("/calendar")
@require_auth
def booking_calendar_route():
    """
    Scheduled bookings for a month, grouped by start date.

    Query params: year, month (default: current UTC month).
    """
    try:
        branch_id = branch_service.resolve_branch_id(g.branch_id, request.args.get("branch_id", type=int))
        now = utcnow()
        year = request.args.get("year", now.year, type=int)
        month = request.args.get("month", now.month, type=int)
        if year < 2000 or year > 2100:
            raise ValidationFailed("year out of range", field="year")

        days = reporting_service.get_booking_calendar(branch_id, year, month)
        return jsonify({"year": year, "month": month, "days": days}), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load booking calendar")
        return jsonify({"error": "Internal server error"}), 500
