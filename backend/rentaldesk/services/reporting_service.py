# Overview: Service-layer operations for reporting; dashboard counters and the booking calendar.

from __future__ import annotations

import calendar
from datetime import date, datetime

from sqlalchemy import func

from ..errors import ValidationFailed
from ..extensions import db
from ..models import Customer, Order
from .branch_service import require_branch
from rentaldesk.time_utils import local_date, local_day_bounds, to_utc_z, utcnow


OPEN_STATUSES = ("active", "pending_return", "partially_returned", "flagged")


def get_dashboard_stats(branch_id: int, *, now: datetime | None = None) -> dict:
    """
    Dashboard counters for one branch.

    "Today" is the branch's local calendar day. Completion time is taken from
    the order's last update, which for completed orders is the final return.
    """
    now = now or utcnow()
    branch = require_branch(branch_id)
    today = local_date(now, branch.timezone)
    day_start, day_end = local_day_bounds(today, branch.timezone)

    orders = db.session.query(Order).filter(Order.branch_id == branch_id)

    scheduled_today = orders.filter(Order.status == "scheduled", Order.start_date == today).count()
    ongoing = orders.filter(Order.status == "active", Order.end_at >= now).count()
    late_returns = orders.filter(Order.status.in_(OPEN_STATUSES), Order.end_at < now).count()
    partial_returns = orders.filter(Order.status == "partially_returned").count()

    total_orders = orders.count()
    total_completed = orders.filter(Order.status == "completed").count()
    total_revenue = (
        db.session.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(Order.branch_id == branch_id, Order.status == "completed")
        .scalar()
    )
    total_customers = db.session.query(Customer).filter(Customer.branch_id == branch_id).count()

    completed_today = orders.filter(
        Order.status == "completed",
        Order.updated_at >= day_start,
        Order.updated_at < day_end,
    )
    today_collection = (
        db.session.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(
            Order.branch_id == branch_id,
            Order.status == "completed",
            Order.updated_at >= day_start,
            Order.updated_at < day_end,
        )
        .scalar()
    )
    today_new_orders = orders.filter(Order.booking_at >= day_start, Order.booking_at < day_end).count()

    return {
        "branch_id": branch_id,
        "date": today.isoformat(),
        "today": {
            "scheduled_today": scheduled_today,
            "ongoing": ongoing,
            "late_returns": late_returns,
            "partial_returns": partial_returns,
        },
        "all_time": {
            "total_orders": total_orders,
            "total_completed": total_completed,
            "total_revenue_cents": int(total_revenue or 0),
            "total_customers": total_customers,
        },
        "activity": {
            "today_collection_cents": int(today_collection or 0),
            "today_completed": completed_today.count(),
            "today_new_orders": today_new_orders,
        },
    }


def get_booking_calendar(branch_id: int, year: int, month: int) -> dict[str, list[dict]]:
    """Scheduled orders in a month, grouped by their local start date."""
    require_branch(branch_id)
    if month < 1 or month > 12:
        raise ValidationFailed("month must be between 1 and 12", field="month")

    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])

    orders = (
        db.session.query(Order)
        .filter(
            Order.branch_id == branch_id,
            Order.status == "scheduled",
            Order.start_date >= first,
            Order.start_date <= last,
        )
        .order_by(Order.start_at, Order.id)
        .all()
    )

    days: dict[str, list[dict]] = {}
    for order in orders:
        days.setdefault(order.start_date.isoformat(), []).append({
            "id": order.id,
            "invoice_number": order.invoice_number,
            "customer_name": order.customer.name if order.customer else None,
            "start_at": to_utc_z(order.start_at),
            "end_at": to_utc_z(order.end_at),
            "item_count": len(order.items),
            "total_cents": order.total_cents,
        })
    return days
