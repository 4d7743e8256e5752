# Overview: Service-layer operations for orders; encapsulates business logic and database work.

"""
Order Lifecycle Service

Creation, pre-return edits, start-rental, the simple status transition, and
read models for list/detail views. Return settlement lives in
settlement_service; the expiration sweeper in expiry_service.

DESIGN:
- Every mutation runs in one transaction with its audit entry
- Change events are published only after commit
- start_at/end_at are authoritative; start_date/end_date are recomputed
  from them in the branch timezone on every write
- Status transitions are conditional UPDATEs guarded by the status that was
  read, so concurrent writers cannot both win
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import flag_modified

from ..change_feed import ChangeEvent
from ..errors import Conflict, RentalError, Unauthenticated, ValidationFailed
from ..extensions import change_feed, db
from ..models import Customer, Order, OrderItem
from ..validation import (
    ItemInput,
    OrderCreateRequest,
    OrderUpdateRequest,
    StatusTransitionRequest,
    check_date_range,
    check_late_fee,
)
from .audit_service import append_audit_event
from .branch_service import get_customer_in_branch, get_order_in_branch, require_branch
from .cancellation_policy import CancellationPolicy, can_cancel
from .concurrency import run_with_retry
from .document_service import next_invoice_number
from .pricing import compute_charges, recompute_order_totals
from .status_service import DISPLAY_CATEGORIES, display_category
from rentaldesk.time_utils import local_date, utcnow


# Sources each simple transition target may be reached from
ALLOWED_TRANSITIONS = {
    "active": ("pending_return", "partially_returned"),
    "partially_returned": ("active", "pending_return"),
    "completed": ("active", "pending_return", "partially_returned", "flagged"),
    "cancelled": ("scheduled", "active"),
}


def cancellation_policy() -> CancellationPolicy:
    return CancellationPolicy.from_config(current_app.config)


def require_actor(actor_id: int | None) -> int:
    if actor_id is None:
        raise Unauthenticated("Acting staff member is required")
    return actor_id


def touch(order: Order, now: datetime) -> None:
    """Mark the order row dirty so its version counter moves with the aggregate."""
    order.updated_at = now
    flag_modified(order, "updated_at")


def publish_order_change(order_id: int, branch_id: int, event: str = "update", item_ids=()) -> None:
    change_feed.publish(ChangeEvent(entity="order", id=order_id, event=event, branch_id=branch_id))
    for item_id in item_ids:
        change_feed.publish(ChangeEvent(entity="item", id=item_id, event=event, branch_id=branch_id))


def order_snapshot(order: Order, now: datetime | None = None) -> dict:
    """Order JSON plus the derived fields a client renders."""
    now = now or utcnow()
    data = order.to_dict()
    data["display_category"] = display_category(order.status, order.items, order.end_at, now)
    data["can_cancel"] = can_cancel(order, now, cancellation_policy())
    return data


def _set_window(order: Order, start_at: datetime, end_at: datetime, tz_name: str | None) -> None:
    order.start_at = start_at
    order.end_at = end_at
    order.start_date = local_date(start_at, tz_name)
    order.end_date = local_date(end_at, tz_name)


def _build_items(items: tuple[ItemInput, ...]) -> list[OrderItem]:
    return [
        OrderItem(
            product_name=i.product_name,
            photo_url=i.photo_url,
            quantity=i.quantity,
            price_per_day_cents=i.price_per_day_cents,
            days=i.days,
            line_total_cents=i.line_total_cents,
            return_status="not_yet_returned",
            returned_quantity=0,
            late_return=False,
            damage_fee_cents=0,
        )
        for i in items
    ]


def _apply_charges(order: Order) -> None:
    line_sum = sum(item.line_total_cents for item in order.items)
    charges = compute_charges(line_sum, order.gst_rate_bps, order.gst_included)
    order.subtotal_cents = charges.subtotal_cents
    order.gst_cents = charges.gst_cents
    recompute_order_totals(order)


def create_order(
    request: OrderCreateRequest,
    *,
    branch_id: int,
    actor_id: int | None,
    now: datetime | None = None,
) -> Order:
    """
    Create an order with its items in one transaction.

    Status is "scheduled" for a future start, otherwise "active". Without an
    explicit invoice number the branch's daily sequence allocates one.
    """
    require_actor(actor_id)
    now = now or utcnow()

    def _op() -> Order:
        branch = require_branch(branch_id)
        get_customer_in_branch(request.customer_id, branch_id)

        invoice_number = request.invoice_number
        if invoice_number:
            exists = db.session.query(Order.id).filter_by(
                branch_id=branch_id, invoice_number=invoice_number
            ).first()
            if exists:
                raise ValidationFailed("Invoice number already exists", field="invoice_number")
        else:
            prefix = branch.invoice_prefix or current_app.config.get("INVOICE_PREFIX", "RNT")
            invoice_number = next_invoice_number(branch_id=branch_id, prefix=prefix, on=now)

        status = "scheduled" if request.start_at > now else "active"
        order = Order(
            branch_id=branch_id,
            customer_id=request.customer_id,
            staff_id=actor_id,
            invoice_number=invoice_number,
            status=status,
            booking_at=now,
            gst_rate_bps=branch.gst_rate_bps if branch.gst_enabled else 0,
            gst_included=bool(branch.gst_enabled and branch.gst_included),
            late_fee_cents=0,
            late_returned=False,
            notes=request.notes,
            updated_at=now,
        )
        _set_window(order, request.start_at, request.end_at, branch.timezone)
        order.items = _build_items(request.items)
        _apply_charges(order)

        db.session.add(order)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise Conflict("Invoice number already exists", code="duplicate_invoice") from exc

        append_audit_event(
            order_id=order.id,
            branch_id=order.branch_id,
            action="order_created",
            actor_id=actor_id,
            new_status=status,
            notes=f"Order {invoice_number} created",
            payload={"item_count": len(order.items), "total_cents": order.total_cents},
            occurred_at=now,
        )
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except RentalError:
        db.session.rollback()
        raise

    publish_order_change(order.id, order.branch_id, "insert", [item.id for item in order.items])
    return order


def update_order(
    order_id: int,
    request: OrderUpdateRequest,
    *,
    scope_branch_id: int | None,
    actor_id: int | None,
    now: datetime | None = None,
) -> Order:
    """
    Edit an order before any return was recorded.

    Replacing items or moving the rental window is refused once any item has
    a returned quantity; notes and customer stay editable until the order is
    terminal.
    """
    require_actor(actor_id)
    now = now or utcnow()

    def _op() -> tuple[Order, list[int]]:
        order = get_order_in_branch(order_id, scope_branch_id, lock=True)

        if request.expected_version is not None and request.expected_version != order.version_id:
            raise Conflict(
                "Order was modified by another user; refresh and try again",
                code="stale_version",
                details={"expected_version": request.expected_version, "current_version": order.version_id},
            )
        if order.status in ("cancelled", "completed"):
            raise Conflict(f"Cannot edit a {order.status} order", code="order_closed")

        returns_recorded = any(item.returned_quantity > 0 for item in order.items)
        touches_items = request.items is not None or request.start_at is not None or request.end_at is not None
        if touches_items and returns_recorded:
            raise Conflict(
                "Items and dates cannot be changed after a return was recorded",
                code="items_locked",
            )

        changed: list[str] = []
        removed_item_ids: list[int] = []

        if request.customer_id is not None and request.customer_id != order.customer_id:
            get_customer_in_branch(request.customer_id, order.branch_id)
            order.customer_id = request.customer_id
            changed.append("customer_id")

        if request.notes is not None and request.notes != order.notes:
            order.notes = request.notes
            changed.append("notes")

        if request.start_at is not None or request.end_at is not None:
            start_at = request.start_at or order.start_at
            end_at = request.end_at or order.end_at
            check_date_range(start_at, end_at)
            _set_window(order, start_at, end_at, order.branch.timezone)
            changed.append("dates")

        if request.items is not None:
            removed_item_ids = [item.id for item in order.items]
            order.items = _build_items(request.items)
            changed.append("items")

        _apply_charges(order)
        touch(order, now)
        db.session.flush()

        append_audit_event(
            order_id=order.id,
            branch_id=order.branch_id,
            action="order_updated",
            actor_id=actor_id,
            previous_status=order.status,
            new_status=order.status,
            notes="Order details updated",
            payload={"fields": changed, "total_cents": order.total_cents},
            occurred_at=now,
        )
        db.session.commit()
        return order, removed_item_ids

    try:
        order, removed_item_ids = run_with_retry(_op)
    except RentalError:
        db.session.rollback()
        raise

    publish_order_change(order.id, order.branch_id, "update")
    for item_id in removed_item_ids:
        change_feed.publish(ChangeEvent(entity="item", id=item_id, event="delete", branch_id=order.branch_id))
    return order


def start_rental(
    order_id: int,
    *,
    scope_branch_id: int | None,
    actor_id: int | None,
    now: datetime | None = None,
) -> Order:
    """
    Start a scheduled rental now, keeping its booked duration.

    (start_at, end_at) becomes (now, now + original duration).
    """
    require_actor(actor_id)
    now = now or utcnow()

    def _op() -> Order:
        order = get_order_in_branch(order_id, scope_branch_id, lock=True)
        if order.status != "scheduled":
            raise Conflict(
                f"Only scheduled orders can be started (current status: {order.status})",
                code="invalid_transition",
            )

        duration = order.end_at - order.start_at
        _set_window(order, now, now + duration, order.branch.timezone)
        order.started_at = now
        order.status = "active"
        touch(order, now)
        db.session.flush()

        append_audit_event(
            order_id=order.id,
            branch_id=order.branch_id,
            action="rental_started",
            actor_id=actor_id,
            previous_status="scheduled",
            new_status="active",
            notes="Rental started",
            payload={"duration_seconds": int(duration.total_seconds())},
            occurred_at=now,
        )
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except RentalError:
        db.session.rollback()
        raise

    publish_order_change(order.id, order.branch_id)
    return order


def transition_status(
    order_id: int,
    request: StatusTransitionRequest,
    *,
    scope_branch_id: int | None,
    actor_id: int | None,
    now: datetime | None = None,
) -> Order:
    """
    Simple status transition (cancel, force-complete, reopen).

    Applied as UPDATE ... WHERE status = <status read>; losing a race to
    another writer affects zero rows and raises Conflict. A request for the
    current status without a late fee change is a no-op.
    """
    require_actor(actor_id)
    now = now or utcnow()

    order = get_order_in_branch(order_id, scope_branch_id)
    previous_status = order.status
    target = request.status
    late_fee = request.late_fee_cents

    if target == previous_status and (late_fee is None or late_fee == order.late_fee_cents):
        return order

    if request.expected_version is not None and request.expected_version != order.version_id:
        db.session.rollback()
        raise Conflict(
            "Order was modified by another user; refresh and try again",
            code="stale_version",
            details={"expected_version": request.expected_version, "current_version": order.version_id},
        )

    if target != previous_status:
        if previous_status not in ALLOWED_TRANSITIONS[target]:
            db.session.rollback()
            raise Conflict(
                f"Cannot change status from {previous_status} to {target}",
                code="invalid_transition",
            )
        if target == "cancelled" and not can_cancel(order, now, cancellation_policy()):
            db.session.rollback()
            raise Conflict("Cancellation window has closed for this order", code="cancellation_window_closed")

    if late_fee is not None and late_fee != order.late_fee_cents:
        try:
            check_late_fee(
                late_fee,
                subtotal_cents=order.subtotal_cents,
                gst_cents=order.gst_cents,
                multiplier=current_app.config.get("LATE_FEE_SANITY_MULTIPLIER", 5),
                confirmed=request.confirm_large_late_fee,
            )
        except ValidationFailed:
            db.session.rollback()
            raise

    values = {
        "status": target,
        "updated_at": now,
        "version_id": Order.version_id + 1,
    }
    if late_fee is not None:
        values["late_fee_cents"] = late_fee
        values["total_cents"] = order.subtotal_cents + order.gst_cents + late_fee + order.damage_fee_total_cents
        values["late_returned"] = bool(late_fee > 0 or any(item.late_return for item in order.items))

    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status == previous_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    branch_id = order.branch_id

    def _op() -> int:
        result = db.session.execute(stmt)
        if result.rowcount != 1:
            db.session.rollback()
            return 0
        append_audit_event(
            order_id=order_id,
            branch_id=branch_id,
            action="status_changed",
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=target,
            notes=f"Status changed from {previous_status} to {target}",
            payload={"late_fee_cents": late_fee} if late_fee is not None else None,
            occurred_at=now,
        )
        db.session.commit()
        return 1

    if not run_with_retry(_op):
        raise Conflict(
            "Order status changed before this update was applied; refresh and try again",
            code="status_changed",
        )

    publish_order_change(order_id, branch_id)
    return get_order_in_branch(order_id, scope_branch_id)


# Categories decided by status alone
STATUS_CATEGORIES = {
    "cancelled": "cancelled",
    "returned": "completed",
    "scheduled": "scheduled",
}

# Statuses whose category depends on items and dates
DATED_EXCLUDED_STATUSES = ("cancelled", "completed", "scheduled", "partially_returned")


def list_orders(
    *,
    branch_id: int | None,
    category: str | None = None,
    status: str | None = None,
    q: str | None = None,
    page: int = 1,
    page_size: int = 20,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """
    List order snapshots, newest booking first.

    status, q and the status-only categories are paged in SQL. The late,
    ongoing and partially_returned categories also depend on item state, so
    the candidate rows (open orders only) are narrowed in SQL and the final
    split is made on the loaded snapshots.
    """
    now = now or utcnow()
    if category is not None and category not in DISPLAY_CATEGORIES:
        raise ValidationFailed(
            f"category must be one of: {', '.join(DISPLAY_CATEGORIES)}",
            field="category",
        )

    page = max(page, 1)
    page_size = min(max(page_size, 1), 200)
    offset = (page - 1) * page_size

    query = db.session.query(Order).options(selectinload(Order.items), selectinload(Order.customer))
    if branch_id is not None:
        query = query.filter(Order.branch_id == branch_id)
    if status:
        query = query.filter(Order.status == status)
    if q:
        like = f"%{q.strip()}%"
        query = query.join(Customer, Customer.id == Order.customer_id).filter(
            or_(
                Order.invoice_number.ilike(like),
                Customer.name.ilike(like),
                Customer.phone.ilike(like),
                Customer.customer_number.ilike(like),
            )
        )
    query = query.order_by(Order.booking_at.desc(), Order.id.desc())

    if category is None or category in STATUS_CATEGORIES:
        if category is not None:
            query = query.filter(Order.status == STATUS_CATEGORIES[category])
        total = query.count()
        orders = query.offset(offset).limit(page_size).all()
        return [order_snapshot(order, now) for order in orders], total

    open_orders = Order.status.notin_(DATED_EXCLUDED_STATUSES)
    if category == "partially_returned":
        query = query.filter(or_(Order.status == "partially_returned", open_orders))
    elif category == "late":
        query = query.filter(open_orders, Order.end_at < now)
    else:
        query = query.filter(open_orders)

    rows = [order_snapshot(order, now) for order in query.all()]
    rows = [row for row in rows if row["display_category"] == category]
    return rows[offset: offset + page_size], len(rows)
