# Overview: Pytest coverage for the in-process change feed.

import pytest

from rentaldesk.change_feed import ChangeEvent, ChangeFeed
from rentaldesk.extensions import change_feed


def test_events_reach_only_their_branch():
    feed = ChangeFeed()
    main, other = [], []
    feed.subscribe(1, main.append)
    feed.subscribe(2, other.append)

    delivered = feed.publish(ChangeEvent(entity="order", id=10, event="update", branch_id=1))

    assert delivered == 1
    assert [e.id for e in main] == [10]
    assert other == []


def test_close_unsubscribes():
    feed = ChangeFeed()
    received = []
    subscription = feed.subscribe(1, received.append)
    assert feed.subscriber_count(1) == 1

    subscription.close()
    subscription.close()
    feed.publish(ChangeEvent(entity="order", id=10, event="update", branch_id=1))

    assert received == []
    assert feed.subscriber_count(1) == 0


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    feed.subscribe(1, broken)
    feed.subscribe(1, received.append)
    delivered = feed.publish(ChangeEvent(entity="item", id=3, event="delete", branch_id=1))

    assert delivered == 1
    assert len(received) == 1


def test_unknown_entity_rejected():
    feed = ChangeFeed()
    with pytest.raises(ValueError):
        feed.publish(ChangeEvent(entity="customer", id=1, event="update", branch_id=1))
    with pytest.raises(ValueError):
        feed.publish(ChangeEvent(entity="order", id=1, event="upsert", branch_id=1))


def test_event_to_dict():
    event = ChangeEvent(entity="order", id=5, event="insert", branch_id=2)
    assert event.to_dict() == {"entity": "order", "id": 5, "event": "insert", "branch_id": 2}


def test_order_creation_publishes_insert(db_session, make_order, branch):
    received = []
    subscription = change_feed.subscribe(branch.id, received.append)
    try:
        order = make_order()
    finally:
        subscription.close()

    assert ("order", order.id, "insert") in [(e.entity, e.id, e.event) for e in received]
    item_events = [e for e in received if e.entity == "item"]
    assert sorted(e.id for e in item_events) == sorted(item.id for item in order.items)
