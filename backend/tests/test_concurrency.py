# Overview: Pytest coverage for concurrent writers against one order.

"""
Concurrency Tests

Two staff devices settle the same order at the same moment with different
batches. The order row's version counter is the serialization point:
exactly one call commits, the other gets Conflict, and the stored order
reflects only the winner's batch.

These tests use a file-backed SQLite database so each thread gets its own
connection.
"""

import threading
from datetime import timedelta

import pytest

from rentaldesk import create_app
from rentaldesk.errors import Conflict
from rentaldesk.extensions import db
from rentaldesk.models import Branch, Customer, Order
from rentaldesk.services import audit_service, auth_service, expiry_service, order_service, settlement_service
from rentaldesk.validation import ItemInput, OrderCreateRequest, parse_settlement_request
from rentaldesk.time_utils import utcnow


PHOTO = "https://cdn.example.com/items/sherwani.jpg"


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 15}},
        'BCRYPT_ROUNDS': 4,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def seed(app, *, start_offset=timedelta(hours=-1), booking_offset=timedelta(0)):
    """Create branch, staff, customer, and one two-item order. Returns ids."""
    with app.app_context():
        branch = Branch(name="Main Branch", code="MAIN", timezone="UTC")
        db.session.add(branch)
        db.session.commit()
        staff = auth_service.create_staff("asha", "Asha Rao", "Password123!", role="branch_admin", branch_id=branch.id)
        customer = Customer(branch_id=branch.id, name="Meera Iyer")
        db.session.add(customer)
        db.session.commit()

        now = utcnow()
        order = order_service.create_order(
            OrderCreateRequest(
                customer_id=customer.id,
                start_at=now + start_offset,
                end_at=now + start_offset + timedelta(days=2),
                items=(
                    ItemInput(quantity=2, price_per_day_cents=300, days=1, product_name="Sherwani", photo_url=PHOTO),
                    ItemInput(quantity=1, price_per_day_cents=300, days=1, product_name="Turban", photo_url=PHOTO),
                ),
            ),
            branch_id=branch.id,
            actor_id=staff.id,
            now=now + booking_offset,
        )
        return {
            "branch_id": branch.id,
            "staff_id": staff.id,
            "order_id": order.id,
            "version": order.version_id,
            "item_ids": [item.id for item in order.items],
        }


def run_concurrently(app, calls):
    """Run each call in its own thread and app context; return (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    lock = threading.Lock()

    def worker(call):
        with app.app_context():
            barrier.wait()
            try:
                value = call()
                with lock:
                    results.append(value)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


def test_conflicting_settlements_exactly_one_wins(file_app):
    ids = seed(file_app)
    first_item, second_item = ids["item_ids"]

    batch_a = {
        "items": [{"item_id": first_item, "returned_quantity": 2}],
        "expected_version": ids["version"],
    }
    batch_b = {
        "items": [{"item_id": second_item, "returned_quantity": 1,
                   "damage_fee_cents": 200, "damage_description": "Frayed edge"}],
        "expected_version": ids["version"],
    }

    def settle(batch):
        def _call():
            result = settlement_service.settle_return(
                ids["order_id"], parse_settlement_request(batch), actor_id=ids["staff_id"]
            )
            return result.new_status
        return _call

    results, errors = run_concurrently(file_app, [settle(batch_a), settle(batch_b)])

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], Conflict)

    with file_app.app_context():
        order = db.session.get(Order, ids["order_id"])
        quantities = [item.returned_quantity for item in order.items]
        if results[0] == "partially_returned":
            assert quantities == [2, 0]
            assert order.damage_fee_total_cents == 0
            assert order.total_cents == 900
        else:
            assert results[0] == "flagged"
            assert quantities == [0, 1]
            assert order.damage_fee_total_cents == 200
            assert order.total_cents == 1100
        assert order.version_id == ids["version"] + 1
        assert audit_service.count_events(order.id, "items_returned") == 1


def test_concurrent_sweepers_cancel_once(file_app):
    ids = seed(file_app, start_offset=timedelta(hours=-1), booking_offset=timedelta(days=-1))

    with file_app.app_context():
        assert db.session.get(Order, ids["order_id"]).status == "scheduled"

    def sweep():
        return expiry_service.sweep_expired_bookings(ids["branch_id"], force=True).cancelled_ids

    results, errors = run_concurrently(file_app, [sweep, sweep, sweep])

    assert errors == []
    assert sorted(len(cancelled) for cancelled in results) == [0, 0, 1]

    with file_app.app_context():
        assert db.session.get(Order, ids["order_id"]).status == "cancelled"
        assert audit_service.count_events(ids["order_id"], "auto_cancelled") == 1
