# Overview: Service-layer operations for booking expiry; cancels scheduled orders whose start has passed.

"""
Expiration Sweeper

Scheduled orders that were never started are cancelled once their start
instant passes. There is no scheduler process: client activity (listing
orders, opening the dashboard), an explicit endpoint, and the CLI all call
sweep_expired_bookings(), and a per-branch throttle keeps the work to at
most one sweep per interval.

Every cancellation is a conditional UPDATE (status still scheduled, start
still past). Concurrent sweepers race harmlessly: the loser affects zero
rows and writes no audit entry. Database errors are logged and swallowed;
the sweeper is a background correction and never fails a user request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Branch, Order
from .audit_service import append_audit_event
from .order_service import publish_order_change
from rentaldesk.time_utils import utcnow


@dataclass
class SweepResult:
    branch_id: int
    ran: bool
    cancelled_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "branch_id": self.branch_id,
            "ran": self.ran,
            "cancelled": len(self.cancelled_ids),
            "cancelled_ids": self.cancelled_ids,
        }


def claim_sweep_slot(branch_id: int, now: datetime, *, force: bool = False) -> bool:
    """
    Record this sweep on the branch row if the interval has elapsed.

    The UPDATE is conditional, so only one of several concurrent callers
    wins the slot.
    """
    interval = timedelta(seconds=current_app.config.get("EXPIRY_SWEEP_INTERVAL_SECONDS", 30))
    stmt = update(Branch).where(Branch.id == branch_id)
    if not force:
        stmt = stmt.where(
            or_(
                Branch.last_expiry_sweep_at.is_(None),
                Branch.last_expiry_sweep_at <= now - interval,
            )
        )
    result = db.session.execute(
        stmt.values(last_expiry_sweep_at=now).execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _expire_one(order_id: int, branch_id: int, now: datetime) -> bool:
    result = db.session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == "scheduled",
            Order.start_at < now,
        )
        .values(
            status="cancelled",
            updated_at=now,
            version_id=Order.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        return False

    append_audit_event(
        order_id=order_id,
        branch_id=branch_id,
        action="auto_cancelled",
        actor_id=None,
        previous_status="scheduled",
        new_status="cancelled",
        notes="Booking expired before the rental was started",
        occurred_at=now,
    )
    db.session.commit()
    return True


def sweep_expired_bookings(branch_id: int, *, now: datetime | None = None, force: bool = False) -> SweepResult:
    """Cancel the branch's expired scheduled orders. Never raises."""
    now = now or utcnow()
    result = SweepResult(branch_id=branch_id, ran=False)

    try:
        if not claim_sweep_slot(branch_id, now, force=force):
            return result
        result.ran = True

        candidate_ids = [
            row[0]
            for row in db.session.query(Order.id)
            .filter(
                Order.branch_id == branch_id,
                Order.status == "scheduled",
                Order.start_at < now,
            )
            .order_by(Order.start_at)
            .all()
        ]
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning("Expiry sweep skipped for branch %s", branch_id, exc_info=True)
        return result

    for order_id in candidate_ids:
        try:
            if _expire_one(order_id, branch_id, now):
                result.cancelled_ids.append(order_id)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning("Expiry sweep failed for order %s", order_id, exc_info=True)

    for order_id in result.cancelled_ids:
        publish_order_change(order_id, branch_id)

    if result.cancelled_ids:
        current_app.logger.info(
            "Expiry sweep cancelled %s booking(s) in branch %s", len(result.cancelled_ids), branch_id
        )
    return result


def sweep_all_branches(*, now: datetime | None = None, force: bool = True) -> list[SweepResult]:
    branch_ids = [row[0] for row in db.session.query(Branch.id).filter(Branch.is_active.is_(True)).all()]
    return [sweep_expired_bookings(branch_id, now=now, force=force) for branch_id in branch_ids]
