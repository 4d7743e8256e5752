# Overview: Pytest coverage for request parsing and domain checks.

from datetime import datetime

import pytest

from rentaldesk.errors import ValidationFailed
from rentaldesk.services.pricing import MAX_PRICE_CENTS, compute_charges, line_total
from rentaldesk.validation import (
    ItemOutcome,
    check_item_outcome,
    check_late_fee,
    coerce_int,
    parse_item_input,
    parse_order_create,
    parse_settlement_request,
    parse_status_transition,
)


PHOTO = "https://cdn.example.com/items/lehenga.jpg"


class TestCoerceInt:
    def test_accepts_ints_and_integer_strings(self):
        assert coerce_int(5, "q") == 5
        assert coerce_int(" 7 ", "q") == 7

    @pytest.mark.parametrize("value", [True, 1.5, "1.0", "1e3", "", None, "abc"])
    def test_rejects_non_integers(self, value):
        with pytest.raises(ValidationFailed) as exc:
            coerce_int(value, "q")
        assert exc.value.field == "q"


class TestItemOutcome:
    def test_returned_quantity_above_quantity_rejected(self):
        with pytest.raises(ValidationFailed) as exc:
            check_item_outcome(ItemOutcome(item_id=1, returned_quantity=3), quantity=2)
        assert exc.value.field == "returned_quantity"

    def test_negative_returned_quantity_rejected(self):
        with pytest.raises(ValidationFailed):
            check_item_outcome(ItemOutcome(item_id=1, returned_quantity=-1), quantity=2)

    def test_damage_fee_requires_description(self):
        with pytest.raises(ValidationFailed) as exc:
            check_item_outcome(ItemOutcome(item_id=1, returned_quantity=1, damage_fee_cents=200), quantity=1)
        assert exc.value.field == "damage_description"

    def test_negative_damage_fee_rejected(self):
        outcome = ItemOutcome(item_id=1, returned_quantity=1, damage_fee_cents=-5, damage_description="x")
        with pytest.raises(ValidationFailed):
            check_item_outcome(outcome, quantity=1)

    def test_missing_requires_outstanding_quantity(self):
        with pytest.raises(ValidationFailed) as exc:
            check_item_outcome(ItemOutcome(item_id=1, returned_quantity=2, missing=True), quantity=2)
        assert exc.value.field == "missing"

    def test_valid_outcome_passes(self):
        outcome = ItemOutcome(item_id=1, returned_quantity=1, damage_fee_cents=200, damage_description="Torn hem")
        check_item_outcome(outcome, quantity=2)


class TestSettlementRequest:
    def test_parses_batch(self):
        request = parse_settlement_request({
            "items": [
                {"item_id": 1, "returned_quantity": 2},
                {"item_id": 2, "returned_quantity": "0", "missing": True, "missing_note": "Customer lost it"},
            ],
            "late_fee_cents": 50,
            "expected_version": 3,
        })
        assert [o.item_id for o in request.items] == [1, 2]
        assert request.items[1].missing is True
        assert request.late_fee_cents == 50
        assert request.expected_version == 3
        assert request.confirm_large_late_fee is False

    def test_empty_items_rejected(self):
        with pytest.raises(ValidationFailed):
            parse_settlement_request({"items": []})

    def test_duplicate_items_rejected(self):
        with pytest.raises(ValidationFailed):
            parse_settlement_request({"items": [
                {"item_id": 1, "returned_quantity": 1},
                {"item_id": 1, "returned_quantity": 2},
            ]})

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_settlement_request({"items": [{"item_id": 1, "returned_quantity": 1, "qty": 1}]})
        assert exc.value.field == "qty"

    def test_negative_late_fee_rejected(self):
        with pytest.raises(ValidationFailed):
            parse_settlement_request({"items": [{"item_id": 1, "returned_quantity": 1}], "late_fee_cents": -1})

    def test_non_boolean_missing_rejected(self):
        with pytest.raises(ValidationFailed):
            parse_settlement_request({"items": [{"item_id": 1, "returned_quantity": 0, "missing": "yes"}]})


class TestLateFee:
    def test_within_limit_passes(self):
        check_late_fee(4500, subtotal_cents=900, gst_cents=0, multiplier=5, confirmed=False)

    def test_large_fee_is_warning(self):
        with pytest.raises(ValidationFailed) as exc:
            check_late_fee(4501, subtotal_cents=900, gst_cents=0, multiplier=5, confirmed=False)
        assert exc.value.severity == "warning"
        assert exc.value.code == "late_fee_unusually_large"
        assert exc.value.to_dict()["details"]["limit_cents"] == 4500

    def test_confirmation_overrides_limit(self):
        check_late_fee(100000, subtotal_cents=900, gst_cents=0, multiplier=5, confirmed=True)

    def test_confirmation_does_not_lift_hard_cap(self):
        with pytest.raises(ValidationFailed) as exc:
            check_late_fee(10**20, subtotal_cents=900, gst_cents=0, multiplier=5, confirmed=True)
        assert exc.value.field == "late_fee_cents"
        assert exc.value.severity == "error"

    def test_oversized_fee_rejected_when_parsing(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_status_transition({"status": "completed", "late_fee_cents": 10**20})
        assert exc.value.field == "late_fee_cents"
        with pytest.raises(ValidationFailed):
            parse_settlement_request({
                "items": [{"item_id": 1, "returned_quantity": 1}],
                "late_fee_cents": MAX_PRICE_CENTS + 1,
            })

    def test_transition_accepts_confirmation_flag(self):
        request = parse_status_transition({"status": "completed", "late_fee_cents": 9000, "confirm_large_late_fee": True})
        assert request.late_fee_cents == 9000
        assert request.confirm_large_late_fee is True


class TestOrderInput:
    def test_item_line_total_is_recomputed(self):
        item = parse_item_input({
            "product_name": "Lehenga", "photo_url": PHOTO,
            "quantity": 2, "price_per_day_cents": 1500, "days": 3,
        })
        assert item.line_total_cents == 9000

    def test_mismatched_line_total_rejected(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_item_input({
                "product_name": "Lehenga", "photo_url": PHOTO,
                "quantity": 2, "price_per_day_cents": 1500, "days": 3, "line_total_cents": 8000,
            })
        assert exc.value.field == "line_total_cents"

    @pytest.mark.parametrize("override,field", [
        ({"quantity": 0}, "quantity"),
        ({"price_per_day_cents": 0}, "price_per_day_cents"),
        ({"days": 0}, "days"),
        ({"product_name": "  "}, "product_name"),
        ({"photo_url": "blob:http://localhost/abc"}, "photo_url"),
    ])
    def test_bad_items_rejected(self, override, field):
        payload = {"product_name": "Lehenga", "photo_url": PHOTO, "quantity": 1, "price_per_day_cents": 100}
        payload.update(override)
        with pytest.raises(ValidationFailed) as exc:
            parse_item_input(payload)
        assert exc.value.field == field

    def test_order_requires_one_hour_rental(self):
        with pytest.raises(ValidationFailed) as exc:
            parse_order_create({
                "customer_id": 1,
                "start_at": "2026-03-10T10:00:00Z",
                "end_at": "2026-03-10T10:30:00Z",
                "items": [{"product_name": "Lehenga", "photo_url": PHOTO, "quantity": 1, "price_per_day_cents": 100}],
            })
        assert exc.value.field == "end_at"

    def test_order_dates_normalized_to_utc(self):
        request = parse_order_create({
            "customer_id": 1,
            "start_at": "2026-03-10T10:00:00+05:30",
            "end_at": "2026-03-11T10:00:00+05:30",
            "items": [{"product_name": "Lehenga", "photo_url": PHOTO, "quantity": 1, "price_per_day_cents": 100}],
        })
        assert request.start_at == datetime(2026, 3, 10, 4, 30)
        assert request.end_at == datetime(2026, 3, 11, 4, 30)

    def test_status_transition_targets(self):
        assert parse_status_transition({"status": "cancelled"}).status == "cancelled"
        with pytest.raises(ValidationFailed):
            parse_status_transition({"status": "flagged"})


class TestPricing:
    def test_line_total(self):
        assert line_total(2, 300, 1) == 600

    def test_gst_excluded_added_on_top(self):
        charges = compute_charges(10000, 500, gst_included=False)
        assert (charges.subtotal_cents, charges.gst_cents) == (10000, 500)

    def test_gst_included_carved_out(self):
        charges = compute_charges(10500, 500, gst_included=True)
        assert (charges.subtotal_cents, charges.gst_cents) == (10000, 500)
        assert charges.rental_cents == 10500

    def test_no_gst(self):
        charges = compute_charges(900, 0, gst_included=False)
        assert (charges.subtotal_cents, charges.gst_cents) == (900, 0)
