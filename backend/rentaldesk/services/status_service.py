# Overview: Pure status derivations for orders (display category and canonical status).

"""
Order Status Derivation

Two derivations share one priority order:

- display_category(): the single badge a list view shows. Optimized for
  scanning; uses dates (late) and tolerates rough edges.
- canonical_status(): the persisted status written by return settlement.
  Strictly more conservative: anything abnormal (damage, partial line,
  missing item) escalates to "flagged".

Both take ItemReturnState values so the server (ORM rows) and the client
(JSON snapshots) run the exact same rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable


DISPLAY_CATEGORIES = ("scheduled", "ongoing", "late", "partially_returned", "returned", "cancelled")

TERMINAL_STATUSES = ("cancelled", "completed")


@dataclass(frozen=True)
class ItemReturnState:
    quantity: int
    returned_quantity: int = 0
    return_status: str = "not_yet_returned"
    damage_fee_cents: int = 0
    damage_description: str | None = None

    @property
    def fully_returned(self) -> bool:
        return self.returned_quantity == self.quantity

    @property
    def partially_returned(self) -> bool:
        return 0 < self.returned_quantity < self.quantity

    @property
    def missing(self) -> bool:
        return self.return_status == "missing"

    @property
    def damaged(self) -> bool:
        return self.damage_fee_cents > 0 or bool((self.damage_description or "").strip())

    @classmethod
    def from_item(cls, item: Any) -> "ItemReturnState":
        """Build from an OrderItem row or an item dict."""
        get = item.get if isinstance(item, dict) else lambda key: getattr(item, key, None)
        return cls(
            quantity=get("quantity") or 0,
            returned_quantity=get("returned_quantity") or 0,
            return_status=get("return_status") or "not_yet_returned",
            damage_fee_cents=get("damage_fee_cents") or 0,
            damage_description=get("damage_description"),
        )


def _states(items: Iterable[Any]) -> list[ItemReturnState]:
    return [i if isinstance(i, ItemReturnState) else ItemReturnState.from_item(i) for i in items]


def display_category(status: str, items: Iterable[Any], end_at: datetime | None, now: datetime) -> str:
    if status == "cancelled":
        return "cancelled"
    if status == "partially_returned":
        return "partially_returned"
    if status == "completed":
        return "returned"
    # Scheduled stays scheduled until explicitly started, whatever the dates say
    if status == "scheduled":
        return "scheduled"

    states = _states(items)
    returned_idx = [i for i, s in enumerate(states) if s.return_status == "returned"]
    if returned_idx:
        for j, s in enumerate(states):
            outstanding = not s.fully_returned or s.missing
            if outstanding and any(i != j for i in returned_idx):
                return "partially_returned"

    if end_at is not None and end_at < now:
        return "late"
    if status == "active":
        return "ongoing"
    return "ongoing"


def canonical_status(items: Iterable[Any], current_status: str) -> str:
    """
    Persisted status after a settlement, highest precedence first:

    1. completed: every item fully returned, no damage, nothing missing
    2. flagged: any damage, any partially returned line, or any missing item
    3. partially_returned: some quantity back, the rest untouched
    4. otherwise the current status is kept
    """
    states = _states(items)
    if not states:
        return current_status

    any_damage = any(s.damaged for s in states)
    any_missing = any(s.missing for s in states)
    any_partial = any(s.partially_returned for s in states)

    if all(s.fully_returned for s in states) and not any_damage and not any_missing:
        return "completed"
    if any_damage or any_partial or any_missing:
        return "flagged"
    if any(s.returned_quantity > 0 for s in states):
        return "partially_returned"
    return current_status
