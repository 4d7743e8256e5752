# Overview: Pure cancellation predicate for orders.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any


@dataclass(frozen=True)
class CancellationPolicy:
    grace: timedelta = timedelta(minutes=10)
    recent_start_window: timedelta = timedelta(minutes=60)

    @classmethod
    def from_config(cls, config) -> "CancellationPolicy":
        return cls(
            grace=timedelta(minutes=config.get("CANCEL_GRACE_MINUTES", 10)),
            recent_start_window=timedelta(minutes=config.get("RECENT_START_WINDOW_MINUTES", 60)),
        )


def _field(order: Any, key: str):
    if isinstance(order, dict):
        return order.get(key)
    return getattr(order, key, None)


def active_since(booking_at: datetime, start_at: datetime | None, now: datetime, policy: CancellationPolicy) -> datetime:
    """
    Instant an active order counts as having become active.

    An order whose start came after its booking and lies within the recent
    window just went live, so its start counts. A booking entered with a past
    start only gets the grace window from its creation.
    """
    if start_at is not None and booking_at <= start_at and now - start_at <= policy.recent_start_window:
        return start_at
    return booking_at


def can_cancel(order: Any, now: datetime, policy: CancellationPolicy | None = None) -> bool:
    policy = policy or CancellationPolicy()
    status = _field(order, "status")

    if status in ("cancelled", "completed"):
        return False
    if status == "scheduled":
        return True
    if status == "active":
        booking_at = _field(order, "booking_at")
        if booking_at is None:
            return False
        since = active_since(booking_at, _field(order, "start_at"), now, policy)
        return now - since <= policy.grace
    return False
