# Overview: Pytest coverage for the expiration sweeper.

from datetime import timedelta

from conftest import NOW
from rentaldesk.extensions import db
from rentaldesk.models import Order
from rentaldesk.services import audit_service, expiry_service


def reload(order_id):
    db.session.expire_all()
    return db.session.get(Order, order_id)


def test_expired_booking_is_cancelled_once(db_session, make_order, branch):
    order = make_order(now=NOW - timedelta(days=1), start_at=NOW - timedelta(hours=1))
    assert order.status == "scheduled"
    version = order.version_id

    result = expiry_service.sweep_expired_bookings(branch.id, now=NOW)
    assert result.ran is True
    assert result.cancelled_ids == [order.id]

    order = reload(order.id)
    assert order.status == "cancelled"
    assert order.version_id == version + 1

    again = expiry_service.sweep_expired_bookings(branch.id, now=NOW + timedelta(minutes=5), force=True)
    assert again.cancelled_ids == []
    assert reload(order.id).status == "cancelled"
    assert audit_service.count_events(order.id, "auto_cancelled") == 1


def test_audit_entry_has_no_actor(db_session, make_order, branch):
    order = make_order(now=NOW - timedelta(days=1), start_at=NOW - timedelta(hours=1))
    expiry_service.sweep_expired_bookings(branch.id, now=NOW)

    event = audit_service.get_order_timeline(order.id)[0]
    assert event["action"] == "auto_cancelled"
    assert event["previous_status"] == "scheduled"
    assert event["new_status"] == "cancelled"
    assert event["actor_id"] is None


def test_future_and_started_orders_untouched(db_session, make_order, branch):
    future = make_order(now=NOW, start_at=NOW + timedelta(hours=2))
    active = make_order(now=NOW, start_at=NOW - timedelta(hours=2))
    assert active.status == "active"

    result = expiry_service.sweep_expired_bookings(branch.id, now=NOW)
    assert result.cancelled_ids == []
    assert reload(future.id).status == "scheduled"
    assert reload(active.id).status == "active"


def test_sweep_is_throttled_per_branch(db_session, make_order, branch):
    first = expiry_service.sweep_expired_bookings(branch.id, now=NOW)
    assert first.ran is True

    order = make_order(now=NOW - timedelta(days=1), start_at=NOW - timedelta(minutes=1))
    throttled = expiry_service.sweep_expired_bookings(branch.id, now=NOW + timedelta(seconds=10))
    assert throttled.ran is False
    assert reload(order.id).status == "scheduled"

    later = expiry_service.sweep_expired_bookings(branch.id, now=NOW + timedelta(seconds=31))
    assert later.ran is True
    assert later.cancelled_ids == [order.id]


def test_sweep_only_touches_its_branch(db_session, make_order, branch, other_branch):
    order = make_order(now=NOW - timedelta(days=1), start_at=NOW - timedelta(hours=1))
    result = expiry_service.sweep_expired_bookings(other_branch.id, now=NOW)
    assert result.cancelled_ids == []
    assert reload(order.id).status == "scheduled"


def test_sweep_all_branches(db_session, make_order, branch, other_branch):
    order = make_order(now=NOW - timedelta(days=1), start_at=NOW - timedelta(hours=1))
    results = expiry_service.sweep_all_branches(now=NOW)
    assert {r.branch_id for r in results} == {branch.id, other_branch.id}
    assert sum(len(r.cancelled_ids) for r in results) == 1
    assert reload(order.id).status == "cancelled"


def test_sweep_of_unknown_branch_is_silent(db_session):
    result = expiry_service.sweep_expired_bookings(987654, now=NOW)
    assert result.ran is False
    assert result.cancelled_ids == []
