# Overview: Service-layer operations for return settlement; encapsulates business logic and database work.

"""
Return Settlement Transaction

Recording what came back (and in what state) changes item return
fields, fees, totals, and the order's canonical status together. A batch is
applied in one transaction or not at all.

FLOW:
1. Lock the order row and validate every outcome against the stored items
2. Compare the batch with the stored state; an identical batch is a no-op
   (no write, no audit entry), even with a stale expected_version
3. Check expected_version, then apply item outcomes, late fee, status, totals
4. Flush under the order's version counter; a concurrent commit surfaces as
   StaleDataError and is reported as Conflict
5. Append one summary audit entry, commit, publish change events

Lock contention (OperationalError) is retried with backoff and reported as
TransientIO when it persists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..errors import Conflict, RentalError, ValidationFailed
from ..extensions import db
from ..models import Order, OrderItem
from ..validation import ItemOutcome, SettlementRequest, check_item_outcome, check_late_fee
from .audit_service import append_audit_event
from .branch_service import get_order_in_branch
from .concurrency import run_with_retry
from .order_service import order_snapshot, publish_order_change, require_actor, touch
from .pricing import recompute_order_totals
from .status_service import canonical_status
from rentaldesk.time_utils import utcnow


NON_RETURNABLE_STATUSES = ("scheduled", "cancelled")


@dataclass
class SettlementResult:
    order: Order
    previous_status: str
    new_status: str
    changed: bool
    changed_item_ids: list[int] = field(default_factory=list)

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "order_id": self.order.id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "total_cents": self.order.total_cents,
            "late_fee_cents": self.order.late_fee_cents,
            "damage_fee_total_cents": self.order.damage_fee_total_cents,
            "version": self.order.version_id,
            "changed": self.changed,
            "order": order_snapshot(self.order, now),
        }


@dataclass(frozen=True)
class _TargetState:
    returned_quantity: int
    return_status: str
    damage_fee_cents: int
    damage_description: str | None
    missing_note: str | None


def target_state(outcome: ItemOutcome) -> _TargetState:
    if outcome.missing:
        return_status = "missing"
    elif outcome.returned_quantity > 0:
        return_status = "returned"
    else:
        return_status = "not_yet_returned"
    return _TargetState(
        returned_quantity=outcome.returned_quantity,
        return_status=return_status,
        damage_fee_cents=outcome.damage_fee_cents,
        damage_description=outcome.damage_description,
        missing_note=outcome.missing_note if outcome.missing else None,
    )


def _current_state(item: OrderItem) -> _TargetState:
    return _TargetState(
        returned_quantity=item.returned_quantity or 0,
        return_status=item.return_status or "not_yet_returned",
        damage_fee_cents=item.damage_fee_cents or 0,
        damage_description=item.damage_description or None,
        missing_note=item.missing_note or None,
    )


def _apply_outcome(item: OrderItem, target: _TargetState, end_at: datetime, now: datetime) -> None:
    if target.returned_quantity != (item.returned_quantity or 0):
        # Return instant tracks the latest change of returned quantity
        item.actual_return_at = now if target.returned_quantity > 0 else None
    item.returned_quantity = target.returned_quantity
    item.return_status = target.return_status
    item.damage_fee_cents = target.damage_fee_cents
    item.damage_description = target.damage_description
    item.missing_note = target.missing_note
    item.late_return = bool(
        target.returned_quantity > 0
        and item.actual_return_at is not None
        and end_at < item.actual_return_at
    )


def _validate_items(order: Order, request: SettlementRequest) -> dict[int, OrderItem]:
    items_by_id = {item.id: item for item in order.items}

    unknown = [o.item_id for o in request.items if o.item_id not in items_by_id]
    if unknown:
        foreign = db.session.query(OrderItem.id).filter(OrderItem.id.in_(unknown)).all()
        if foreign:
            raise ValidationFailed(
                "Some items do not belong to this order",
                field="items",
                details={"item_ids": sorted(row[0] for row in foreign)},
            )
        raise Conflict(
            "Order items changed since they were loaded; refresh and try again",
            code="item_set_changed",
            details={"item_ids": sorted(unknown)},
        )

    for outcome in request.items:
        check_item_outcome(outcome, items_by_id[outcome.item_id].quantity)
    return items_by_id


def _summary(order: Order, previous_status: str, previous_late_fee: int) -> tuple[str, dict]:
    items = order.items
    fully = sum(1 for i in items if i.returned_quantity == i.quantity and i.return_status != "missing")
    partial = sum(1 for i in items if 0 < i.returned_quantity < i.quantity)
    missing = sum(1 for i in items if i.return_status == "missing")
    damaged = sum(1 for i in items if (i.damage_fee_cents or 0) > 0 or (i.damage_description or "").strip())
    outstanding = sum(1 for i in items if i.returned_quantity == 0 and i.return_status != "missing")

    if order.status == "completed":
        notes = "All items returned"
    elif damaged:
        notes = "Items returned with damage"
    elif missing:
        notes = "Some items missing"
    elif partial:
        notes = "Partial return"
    else:
        notes = "Some items returned"

    payload = {
        "item_count": len(items),
        "fully_returned": fully,
        "partially_returned": partial,
        "missing": missing,
        "damaged": damaged,
        "not_returned": outstanding,
        "returned_quantity": sum(i.returned_quantity for i in items),
        "damage_fee_total_cents": order.damage_fee_total_cents,
        "late_fee_cents": order.late_fee_cents,
        "previous_late_fee_cents": previous_late_fee,
        "total_cents": order.total_cents,
        "previous_status": previous_status,
    }
    return notes, payload


def settle_return(
    order_id: int,
    request: SettlementRequest,
    *,
    actor_id: int | None,
    scope_branch_id: int | None = None,
    now: datetime | None = None,
) -> SettlementResult:
    """
    Commit a batch of item return outcomes for one order, all-or-nothing.

    Raises:
        Unauthenticated: actor_id missing
        NotFound: order missing or outside scope_branch_id
        ValidationFailed: bad quantities or fees, item from another order,
            late fee above the sanity limit without confirmation (warning)
        Conflict: stale expected_version, concurrent commit, order not
            returnable, or items replaced since the caller loaded them
        TransientIO: storage stayed locked through every retry
    """
    require_actor(actor_id)
    now = now or utcnow()
    multiplier = current_app.config.get("LATE_FEE_SANITY_MULTIPLIER", 5)

    def _op() -> SettlementResult:
        order = get_order_in_branch(order_id, scope_branch_id, lock=True)
        previous_status = order.status

        if order.status in NON_RETURNABLE_STATUSES:
            raise Conflict(
                f"Returns cannot be recorded for a {order.status} order",
                code="order_not_returnable",
            )

        items_by_id = _validate_items(order, request)

        previous_late_fee = order.late_fee_cents or 0
        late_fee = previous_late_fee if request.late_fee_cents is None else request.late_fee_cents
        if late_fee != previous_late_fee:
            check_late_fee(
                late_fee,
                subtotal_cents=order.subtotal_cents,
                gst_cents=order.gst_cents,
                multiplier=multiplier,
                confirmed=request.confirm_large_late_fee,
            )

        targets = {o.item_id: target_state(o) for o in request.items}
        changed_ids = [
            item_id for item_id, target in targets.items()
            if target != _current_state(items_by_id[item_id])
        ]

        if not changed_ids and late_fee == previous_late_fee:
            return SettlementResult(
                order=order,
                previous_status=previous_status,
                new_status=order.status,
                changed=False,
            )

        if request.expected_version is not None and request.expected_version != order.version_id:
            raise Conflict(
                "Order was modified by another user; refresh and try again",
                code="stale_version",
                details={"expected_version": request.expected_version, "current_version": order.version_id},
            )

        for item_id in changed_ids:
            _apply_outcome(items_by_id[item_id], targets[item_id], order.end_at, now)

        order.late_fee_cents = late_fee
        order.late_returned = any(item.late_return for item in order.items) or late_fee > 0
        order.status = canonical_status(order.items, order.status)
        recompute_order_totals(order)
        touch(order, now)
        db.session.flush()

        notes, payload = _summary(order, previous_status, previous_late_fee)
        append_audit_event(
            order_id=order.id,
            branch_id=order.branch_id,
            action="items_returned",
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=order.status,
            notes=notes,
            payload=payload,
            occurred_at=now,
        )
        db.session.commit()

        return SettlementResult(
            order=order,
            previous_status=previous_status,
            new_status=order.status,
            changed=True,
            changed_item_ids=sorted(changed_ids),
        )

    try:
        result = run_with_retry(_op)
    except RentalError:
        db.session.rollback()
        raise

    if result.changed:
        publish_order_change(result.order.id, result.order.branch_id, "update", result.changed_item_ids)
        current_app.logger.info(
            "Order %s settled by staff %s: %s -> %s (total %s)",
            result.order.id, actor_id, result.previous_status, result.new_status, result.order.total_cents,
        )
    else:
        # No-op: release the row lock taken while comparing
        db.session.rollback()
    return result
