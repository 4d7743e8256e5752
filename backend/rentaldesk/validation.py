from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .errors import ValidationFailed
from .services.pricing import MAX_PRICE_CENTS, late_fee_limit, line_total
from .time_utils import parse_iso_datetime


MIN_RENTAL = timedelta(hours=1)
MAX_ITEMS_PER_ORDER = 200
MAX_TEXT_LENGTH = 2000


# =============================================================================
# Coercion helpers
# =============================================================================

def _reject_unknown(payload: dict, allowed: set[str], where: str = "payload") -> None:
    for k in payload.keys():
        if k not in allowed:
            raise ValidationFailed(f"Unknown field in {where}: {k}", field=k)


def _require_mapping(payload: Any, where: str = "payload") -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationFailed(f"Invalid JSON {where}")
    return payload


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals and
    scientific notation rather than silently truncating.
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationFailed(f"{field} must be an integer", field=field)
        if 'e' in stripped.lower():
            raise ValidationFailed(f"{field} must be a plain integer (scientific notation not allowed)", field=field)
        if '.' in stripped:
            raise ValidationFailed(f"{field} must be an integer (no decimals)", field=field)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationFailed(f"{field} must be an integer", field=field)
    if isinstance(value, float):
        raise ValidationFailed(f"{field} must be an integer, not a decimal", field=field)
    raise ValidationFailed(f"{field} must be an integer", field=field)


def _optional_int(payload: dict, key: str) -> int | None:
    raw = payload.get(key)
    if raw is None:
        return None
    return coerce_int(raw, key)


def _coerce_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValidationFailed(f"{field} must be true or false", field=field)


def _optional_text(payload: dict, key: str, max_length: int = MAX_TEXT_LENGTH) -> str | None:
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationFailed(f"{key} must be a string", field=key)
    value = raw.strip()
    if len(value) > max_length:
        raise ValidationFailed(f"{key} exceeds max length {max_length}", field=key)
    return value or None


def coerce_datetime(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationFailed(f"{field} must be an ISO-8601 datetime", field=field)
        if dt is not None:
            return dt
    raise ValidationFailed(f"{field} must be an ISO-8601 datetime", field=field)


# =============================================================================
# Return settlement
# =============================================================================

@dataclass(frozen=True)
class ItemOutcome:
    """
    Proposed return state for one item.

    Omitted damage fields mean "no damage": a settlement batch states the
    complete outcome for each item it lists.
    """
    item_id: int
    returned_quantity: int
    damage_fee_cents: int = 0
    damage_description: str | None = None
    missing: bool = False
    missing_note: str | None = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "returned_quantity": self.returned_quantity,
            "damage_fee_cents": self.damage_fee_cents,
            "damage_description": self.damage_description,
            "missing": self.missing,
            "missing_note": self.missing_note,
        }


ITEM_OUTCOME_FIELDS = {
    "item_id", "returned_quantity", "damage_fee_cents", "damage_description", "missing", "missing_note",
}


def parse_item_outcome(raw: Any) -> ItemOutcome:
    payload = _require_mapping(raw, "item outcome")
    _reject_unknown(payload, ITEM_OUTCOME_FIELDS, "item outcome")

    if payload.get("item_id") is None:
        raise ValidationFailed("item_id is required", field="item_id")
    if payload.get("returned_quantity") is None:
        raise ValidationFailed("returned_quantity is required", field="returned_quantity")

    missing = payload.get("missing")
    return ItemOutcome(
        item_id=coerce_int(payload["item_id"], "item_id"),
        returned_quantity=coerce_int(payload["returned_quantity"], "returned_quantity"),
        damage_fee_cents=_optional_int(payload, "damage_fee_cents") or 0,
        damage_description=_optional_text(payload, "damage_description"),
        missing=_coerce_bool(missing, "missing") if missing is not None else False,
        missing_note=_optional_text(payload, "missing_note"),
    )


def check_item_outcome(outcome: ItemOutcome, quantity: int) -> None:
    """Domain checks for one outcome against its item's rented quantity."""
    rq = outcome.returned_quantity
    if rq < 0 or rq > quantity:
        raise ValidationFailed(
            f"returned_quantity must be between 0 and {quantity}",
            field="returned_quantity",
            details={"item_id": outcome.item_id, "quantity": quantity, "returned_quantity": rq},
        )
    if outcome.damage_fee_cents < 0:
        raise ValidationFailed(
            "damage_fee_cents must be >= 0",
            field="damage_fee_cents",
            details={"item_id": outcome.item_id},
        )
    if outcome.damage_fee_cents > MAX_PRICE_CENTS:
        raise ValidationFailed(
            f"damage_fee_cents cannot exceed {MAX_PRICE_CENTS}",
            field="damage_fee_cents",
            details={"item_id": outcome.item_id},
        )
    if outcome.damage_fee_cents > 0 and not outcome.damage_description:
        raise ValidationFailed(
            "damage_description is required when a damage fee is charged",
            field="damage_description",
            details={"item_id": outcome.item_id},
        )
    if outcome.missing and rq >= quantity:
        raise ValidationFailed(
            "An item cannot be missing when its full quantity was returned",
            field="missing",
            details={"item_id": outcome.item_id},
        )


def check_late_fee_bounds(late_fee_cents: int) -> None:
    if late_fee_cents < 0:
        raise ValidationFailed("late_fee_cents must be >= 0", field="late_fee_cents")
    if late_fee_cents > MAX_PRICE_CENTS:
        raise ValidationFailed(f"late_fee_cents cannot exceed {MAX_PRICE_CENTS}", field="late_fee_cents")


def check_late_fee(
    late_fee_cents: int,
    *,
    subtotal_cents: int,
    gst_cents: int,
    multiplier: int,
    confirmed: bool,
) -> None:
    check_late_fee_bounds(late_fee_cents)
    limit = late_fee_limit(subtotal_cents, gst_cents, multiplier)
    if late_fee_cents > limit and not confirmed:
        raise ValidationFailed(
            "Late fee is unusually large for this order; resubmit with confirm_large_late_fee to proceed",
            field="late_fee_cents",
            severity="warning",
            code="late_fee_unusually_large",
            details={"late_fee_cents": late_fee_cents, "limit_cents": limit},
        )


@dataclass(frozen=True)
class SettlementRequest:
    items: tuple[ItemOutcome, ...]
    late_fee_cents: int | None = None
    expected_version: int | None = None
    confirm_large_late_fee: bool = False


SETTLEMENT_FIELDS = {"items", "late_fee_cents", "expected_version", "confirm_large_late_fee"}


def parse_settlement_request(raw: Any) -> SettlementRequest:
    payload = _require_mapping(raw)
    _reject_unknown(payload, SETTLEMENT_FIELDS)

    items_raw = payload.get("items")
    if not isinstance(items_raw, list) or not items_raw:
        raise ValidationFailed("items must be a non-empty list", field="items")

    items = tuple(parse_item_outcome(i) for i in items_raw)
    seen: set[int] = set()
    for outcome in items:
        if outcome.item_id in seen:
            raise ValidationFailed(
                f"Item {outcome.item_id} appears more than once",
                field="items",
                details={"item_id": outcome.item_id},
            )
        seen.add(outcome.item_id)

    late_fee = _optional_int(payload, "late_fee_cents")
    if late_fee is not None:
        check_late_fee_bounds(late_fee)

    confirm = payload.get("confirm_large_late_fee")
    return SettlementRequest(
        items=items,
        late_fee_cents=late_fee,
        expected_version=_optional_int(payload, "expected_version"),
        confirm_large_late_fee=_coerce_bool(confirm, "confirm_large_late_fee") if confirm is not None else False,
    )


# =============================================================================
# Order create / edit
# =============================================================================

@dataclass(frozen=True)
class ItemInput:
    quantity: int
    price_per_day_cents: int
    days: int
    product_name: str | None
    photo_url: str | None

    @property
    def line_total_cents(self) -> int:
        return line_total(self.quantity, self.price_per_day_cents, self.days)


ITEM_INPUT_FIELDS = {"product_name", "photo_url", "quantity", "price_per_day_cents", "days", "line_total_cents"}


def parse_item_input(raw: Any) -> ItemInput:
    payload = _require_mapping(raw, "item")
    _reject_unknown(payload, ITEM_INPUT_FIELDS, "item")

    for key in ("quantity", "price_per_day_cents"):
        if payload.get(key) is None:
            raise ValidationFailed(f"{key} is required", field=key)

    quantity = coerce_int(payload["quantity"], "quantity")
    price = coerce_int(payload["price_per_day_cents"], "price_per_day_cents")
    days = _optional_int(payload, "days")
    days = 1 if days is None else days
    product_name = _optional_text(payload, "product_name", max_length=255)
    photo_url = _optional_text(payload, "photo_url")

    if quantity <= 0:
        raise ValidationFailed("Item quantity must be greater than 0", field="quantity")
    if price <= 0:
        raise ValidationFailed("Item price per day must be greater than 0", field="price_per_day_cents")
    if price > MAX_PRICE_CENTS:
        raise ValidationFailed(f"price_per_day_cents cannot exceed {MAX_PRICE_CENTS}", field="price_per_day_cents")
    if days < 1:
        raise ValidationFailed("Item days must be at least 1", field="days")
    if not product_name:
        raise ValidationFailed("Item product name is required", field="product_name")
    if not photo_url:
        raise ValidationFailed("Item photo is required", field="photo_url")
    if photo_url.startswith("blob:"):
        raise ValidationFailed("Item photo is still uploading. Please wait.", field="photo_url")

    item = ItemInput(
        quantity=quantity,
        price_per_day_cents=price,
        days=days,
        product_name=product_name,
        photo_url=photo_url,
    )

    # A submitted line total is only accepted when it matches the recomputed one
    submitted_total = _optional_int(payload, "line_total_cents")
    if submitted_total is not None and submitted_total != item.line_total_cents:
        raise ValidationFailed(
            "line_total_cents does not match quantity x price_per_day_cents x days",
            field="line_total_cents",
            details={"expected": item.line_total_cents, "submitted": submitted_total},
        )
    return item


def _parse_items(raw: Any) -> tuple[ItemInput, ...]:
    if not isinstance(raw, list) or not raw:
        raise ValidationFailed("At least one item is required", field="items")
    if len(raw) > MAX_ITEMS_PER_ORDER:
        raise ValidationFailed(f"An order cannot have more than {MAX_ITEMS_PER_ORDER} items", field="items")
    return tuple(parse_item_input(i) for i in raw)


def check_date_range(start_at: datetime, end_at: datetime) -> None:
    if end_at <= start_at:
        raise ValidationFailed("End date must be after start date", field="end_at")
    if end_at - start_at < MIN_RENTAL:
        raise ValidationFailed("Rental duration must be at least 1 hour", field="end_at")


@dataclass(frozen=True)
class OrderCreateRequest:
    customer_id: int
    start_at: datetime
    end_at: datetime
    items: tuple[ItemInput, ...]
    invoice_number: str | None = None
    notes: str | None = None


ORDER_CREATE_FIELDS = {"customer_id", "start_at", "end_at", "items", "invoice_number", "notes"}


def parse_order_create(raw: Any) -> OrderCreateRequest:
    payload = _require_mapping(raw)
    _reject_unknown(payload, ORDER_CREATE_FIELDS)

    for key in ("customer_id", "start_at", "end_at"):
        if payload.get(key) is None:
            raise ValidationFailed(f"{key} is required", field=key)

    start_at = coerce_datetime(payload["start_at"], "start_at")
    end_at = coerce_datetime(payload["end_at"], "end_at")
    check_date_range(start_at, end_at)

    return OrderCreateRequest(
        customer_id=coerce_int(payload["customer_id"], "customer_id"),
        start_at=start_at,
        end_at=end_at,
        items=_parse_items(payload.get("items")),
        invoice_number=_optional_text(payload, "invoice_number", max_length=64),
        notes=_optional_text(payload, "notes"),
    )


@dataclass(frozen=True)
class OrderUpdateRequest:
    customer_id: int | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    items: tuple[ItemInput, ...] | None = None
    notes: str | None = None
    expected_version: int | None = None


ORDER_UPDATE_FIELDS = {"customer_id", "start_at", "end_at", "items", "notes", "expected_version"}


def parse_order_update(raw: Any) -> OrderUpdateRequest:
    payload = _require_mapping(raw)
    _reject_unknown(payload, ORDER_UPDATE_FIELDS)

    start_at = coerce_datetime(payload["start_at"], "start_at") if payload.get("start_at") is not None else None
    end_at = coerce_datetime(payload["end_at"], "end_at") if payload.get("end_at") is not None else None

    return OrderUpdateRequest(
        customer_id=_optional_int(payload, "customer_id"),
        start_at=start_at,
        end_at=end_at,
        items=_parse_items(payload["items"]) if "items" in payload else None,
        notes=_optional_text(payload, "notes"),
        expected_version=_optional_int(payload, "expected_version"),
    )


# =============================================================================
# Simple status transition
# =============================================================================

TRANSITION_TARGETS = ("active", "completed", "cancelled", "partially_returned")


@dataclass(frozen=True)
class StatusTransitionRequest:
    status: str
    late_fee_cents: int | None = None
    expected_version: int | None = None
    confirm_large_late_fee: bool = False


STATUS_TRANSITION_FIELDS = {"status", "late_fee_cents", "expected_version", "confirm_large_late_fee"}


def parse_status_transition(raw: Any) -> StatusTransitionRequest:
    payload = _require_mapping(raw)
    _reject_unknown(payload, STATUS_TRANSITION_FIELDS)

    status = payload.get("status")
    if status not in TRANSITION_TARGETS:
        raise ValidationFailed(
            f"status must be one of: {', '.join(TRANSITION_TARGETS)}",
            field="status",
        )

    late_fee = _optional_int(payload, "late_fee_cents")
    if late_fee is not None:
        check_late_fee_bounds(late_fee)
    confirm = payload.get("confirm_large_late_fee")

    return StatusTransitionRequest(
        status=status,
        late_fee_cents=late_fee,
        expected_version=_optional_int(payload, "expected_version"),
        confirm_large_late_fee=_coerce_bool(confirm, "confirm_large_late_fee") if confirm is not None else False,
    )
