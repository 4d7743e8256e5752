# Overview: Flask API routes for order operations; parses input and returns JSON responses.

# backend/rentaldesk/routes/orders.py
"""Order lifecycle API routes, scoped to the caller's branch"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import RentalError
from ..services import (
    audit_service,
    branch_service,
    expiry_service,
    order_service,
    settlement_service,
)
from ..validation import (
    parse_order_create,
    parse_order_update,
    parse_settlement_request,
    parse_status_transition,
)
from ..decorators import require_auth


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _requested_branch_id():
    return request.args.get("branch_id", type=int)


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Create an order with its items.

    Super admins name the branch with "branch_id" in the body.
    """
    try:
        data = request.get_json(silent=True) or {}
        requested = data.pop("branch_id", None) if isinstance(data, dict) else None
        branch_id = branch_service.resolve_branch_id(g.branch_id, requested)

        order = order_service.create_order(
            parse_order_create(data),
            branch_id=branch_id,
            actor_id=g.current_user.id,
        )
        return jsonify({"order": order_service.order_snapshot(order)}), 201

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders_route():
    """
    List orders with optional filters.

    Query params: category (display category), status, q (invoice or
    customer search), page, page_size, branch_id (super admins).

    Listing is client activity, so it also runs the throttled expiry sweep
    for the branch before reading.
    """
    try:
        branch_id = g.branch_id
        requested = _requested_branch_id()
        if branch_id is None and requested is not None:
            branch_id = branch_service.resolve_branch_id(None, requested)

        if branch_id is not None:
            expiry_service.sweep_expired_bookings(branch_id)

        rows, total = order_service.list_orders(
            branch_id=branch_id,
            category=request.args.get("category") or None,
            status=request.args.get("status") or None,
            q=request.args.get("q") or None,
            page=request.args.get("page", 1, type=int),
            page_size=request.args.get("page_size", 20, type=int),
        )
        return jsonify({"orders": rows, "total": total}), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = branch_service.get_order_in_branch(order_id, g.branch_id)
        return jsonify({"order": order_service.order_snapshot(order)}), 200
    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.put("/<int:order_id>")
@require_auth
def update_order_route(order_id: int):
    """Edit an order before any return was recorded."""
    try:
        order = order_service.update_order(
            order_id,
            parse_order_update(request.get_json(silent=True)),
            scope_branch_id=g.branch_id,
            actor_id=g.current_user.id,
        )
        return jsonify({"order": order_service.order_snapshot(order)}), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/start")
@require_auth
def start_rental_route(order_id: int):
    try:
        order = order_service.start_rental(
            order_id,
            scope_branch_id=g.branch_id,
            actor_id=g.current_user.id,
        )
        return jsonify({"order": order_service.order_snapshot(order)}), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start rental")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/status")
@require_auth
def transition_status_route(order_id: int):
    """
    Simple status transition.

    Body: {"status": "active|completed|cancelled|partially_returned",
           "late_fee_cents"?: int, "confirm_large_late_fee"?: bool,
           "expected_version"?: int}
    """
    try:
        order = order_service.transition_status(
            order_id,
            parse_status_transition(request.get_json(silent=True)),
            scope_branch_id=g.branch_id,
            actor_id=g.current_user.id,
        )
        return jsonify({"order": order_service.order_snapshot(order)}), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to change order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/return")
@require_auth
def settle_return_route(order_id: int):
    """
    Return settlement.

    Body: {"items": [{"item_id", "returned_quantity", "damage_fee_cents"?,
           "damage_description"?, "missing"?, "missing_note"?}],
           "late_fee_cents"?, "expected_version"?, "confirm_large_late_fee"?}

    Safe to resubmit: an identical batch returns changed=false and writes nothing.
    """
    try:
        result = settlement_service.settle_return(
            order_id,
            parse_settlement_request(request.get_json(silent=True)),
            actor_id=g.current_user.id,
            scope_branch_id=g.branch_id,
        )
        return jsonify(result.to_dict()), 200

    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to settle return")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/timeline")
@require_auth
def order_timeline_route(order_id: int):
    try:
        order = branch_service.get_order_in_branch(order_id, g.branch_id)
        return jsonify({"order_id": order.id, "events": audit_service.get_order_timeline(order.id)}), 200
    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("/expire-scheduled")
@require_auth
def expire_scheduled_route():
    """Run the expiry sweep for the caller's branch (throttled)."""
    try:
        branch_id = branch_service.resolve_branch_id(g.branch_id, _requested_branch_id())
        result = expiry_service.sweep_expired_bookings(branch_id)
        return jsonify(result.to_dict()), 200
    except RentalError as e:
        return jsonify(e.to_dict()), e.status_code
