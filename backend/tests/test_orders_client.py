# Overview: Pytest coverage for the async orders client against the Flask app.

"""
Orders Client Tests

The client's httpx.AsyncClient is wired to the Flask test client through
httpx.MockTransport, so every call runs the real routes and services.
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import NOW, get_auth_token
from rentaldesk.client.orders_client import OrdersClient
from rentaldesk.errors import Conflict, NotFound, TransientIO, ValidationFailed, error_from_payload
from rentaldesk.extensions import change_feed, db
from rentaldesk.models import Order
from rentaldesk.services import settlement_service
from rentaldesk.validation import parse_settlement_request


class FlaskBridge:
    """MockTransport handler forwarding requests to the Flask test client."""

    def __init__(self, flask_client, on_request=None):
        self.flask_client = flask_client
        self.on_request = on_request
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.raw_path.decode()
        self.paths.append((request.method, request.url.path))
        if self.on_request:
            self.on_request(request)
        response = self.flask_client.open(
            path,
            method=request.method,
            headers={k: v for k, v in request.headers.items() if k.lower() in ("authorization", "content-type")},
            data=request.content,
        )
        return httpx.Response(
            response.status_code,
            content=response.get_data(),
            headers={"Content-Type": response.content_type},
        )


def make_api(bridge, token, **kwargs):
    return OrdersClient("http://rentaldesk.test", token=token, transport=httpx.MockTransport(bridge), **kwargs)


@pytest.fixture
def token(client, staff):
    return get_auth_token(client, staff.username)


def test_settlement_reconciles_with_server(client, token, make_order):
    order = make_order()
    first, second = [item.id for item in order.items]
    seen_status = []

    def capture(request):
        if request.url.path.endswith("/return"):
            seen_status.append(api.projection.get(order.id)["status"])

    bridge = FlaskBridge(client, on_request=capture)
    api = make_api(bridge, token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            return await api.settle_return(order.id, [
                {"item_id": first, "returned_quantity": 2},
                {"item_id": second, "returned_quantity": 0},
            ], late_fee_cents=50)

    result = asyncio.run(scenario())

    # Probable outcome was visible while the write was in flight
    assert seen_status == ["partially_returned"]
    assert result["new_status"] == "partially_returned"
    assert result["total_cents"] == 950

    view = api.projection.get(order.id)
    assert view["status"] == "partially_returned"
    assert view["total_cents"] == 950
    assert view["version"] == 2
    assert api.projection.pending_count(order.id) == 0


def test_conflict_rolls_back_and_refetches(client, token, make_order, staff):
    order = make_order()
    first, second = [item.id for item in order.items]
    api = make_api(FlaskBridge(client), token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)

            # Another device settles first
            settlement_service.settle_return(
                order.id,
                parse_settlement_request({"items": [{"item_id": first, "returned_quantity": 2}]}),
                actor_id=staff.id,
                now=NOW,
            )

            with pytest.raises(Conflict) as exc:
                await api.settle_return(order.id, [{"item_id": second, "returned_quantity": 1}])
            assert exc.value.code == "stale_version"

            rolled_back = api.projection.get(order.id)
            assert rolled_back["status"] == "active"
            assert api.projection.is_stale(order.id)

            return await api.get_order(order.id)

    refreshed = asyncio.run(scenario())
    assert refreshed["status"] == "partially_returned"
    assert refreshed["version"] == 2
    assert api.projection.pending_count(order.id) == 0


def test_client_side_validation_sends_nothing(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    api = make_api(bridge, token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            with pytest.raises(ValidationFailed) as exc:
                await api.settle_return(order.id, [{"item_id": order.items[0].id, "returned_quantity": 5}])
            assert exc.value.field == "returned_quantity"

            with pytest.raises(ValidationFailed):
                await api.settle_return(order.id, [
                    {"item_id": order.items[0].id, "returned_quantity": 1, "damage_fee_cents": 100},
                ])

    asyncio.run(scenario())
    assert [p for p in bridge.paths if p[1].endswith("/return")] == []
    assert api.projection.pending_count(order.id) == 0


def test_client_checks_cancellation_window(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    api = make_api(bridge, token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            with pytest.raises(Conflict) as exc:
                await api.transition_status(order.id, "cancelled", now=NOW + timedelta(minutes=11))
            assert exc.value.code == "cancellation_window_closed"

    asyncio.run(scenario())
    assert [p for p in bridge.paths if p[1].endswith("/status")] == []


def test_transition_confirms_status(client, token, make_order):
    order = make_order(start_at=NOW + timedelta(days=400))
    api = make_api(FlaskBridge(client), token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            return await api.transition_status(order.id, "cancelled")

    view = asyncio.run(scenario())
    assert view["status"] == "cancelled"
    assert view["version"] == 2


def test_transport_error_is_transient_and_rolls_back(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    fail = {"on": False}

    def handler(request):
        if fail["on"]:
            raise httpx.ConnectError("connection refused", request=request)
        return bridge(request)

    api = OrdersClient("http://rentaldesk.test", token=token, transport=httpx.MockTransport(handler))

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            fail["on"] = True
            with pytest.raises(TransientIO):
                await api.transition_status(order.id, "completed")

    asyncio.run(scenario())
    assert api.projection.get(order.id)["status"] == "active"
    assert api.projection.pending_count(order.id) == 0


def test_lost_response_marks_order_stale(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    drop = {"on": False}

    def handler(request):
        response = bridge(request)
        if drop["on"]:
            raise httpx.ReadTimeout("response lost", request=request)
        return response

    api = OrdersClient("http://rentaldesk.test", token=token, transport=httpx.MockTransport(handler))

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            drop["on"] = True
            with pytest.raises(TransientIO):
                await api.transition_status(order.id, "completed")
            assert api.projection.is_stale(order.id)

            drop["on"] = False
            return await api.get_order(order.id)

    view = asyncio.run(scenario())
    assert view["status"] == "completed"
    assert view["version"] == 2
    assert not api.projection.is_stale(order.id)


def test_server_validation_error_keeps_entry_fresh(client, token, make_order):
    order = make_order()
    other = make_order()
    api = make_api(FlaskBridge(client), token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            with pytest.raises(ValidationFailed) as exc:
                await api.settle_return(order.id, [{"item_id": other.items[0].id, "returned_quantity": 1}])
            assert exc.value.field == "items"

    asyncio.run(scenario())
    assert not api.projection.is_stale(order.id)
    assert api.projection.get(order.id)["status"] == "active"
    assert api.projection.pending_count(order.id) == 0


def test_client_checks_late_fee_limit(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    api = make_api(bridge, token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            with pytest.raises(ValidationFailed) as exc:
                await api.transition_status(order.id, "completed", late_fee_cents=4501)
            assert exc.value.severity == "warning"
            return await api.transition_status(
                order.id, "completed", late_fee_cents=4501, confirm_large_late_fee=True
            )

    view = asyncio.run(scenario())
    assert view["late_fee_cents"] == 4501
    assert len([p for p in bridge.paths if p[1].endswith("/status")]) == 1


def test_cancelled_call_rolls_back(client, token, make_order):
    order = make_order()
    bridge = FlaskBridge(client)
    hang = {"on": False}

    async def handler(request):
        if hang["on"]:
            await asyncio.Event().wait()
        return bridge(request)

    api = OrdersClient("http://rentaldesk.test", token=token, transport=httpx.MockTransport(handler))

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            hang["on"] = True
            task = asyncio.ensure_future(api.transition_status(order.id, "completed"))
            for _ in range(5):
                await asyncio.sleep(0)
            assert api.projection.get(order.id)["status"] == "completed"

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    asyncio.run(scenario())
    assert api.projection.get(order.id)["status"] == "active"
    assert api.projection.pending_count(order.id) == 0
    db.session.expire_all()
    assert db.session.get(Order, order.id).status == "active"


def test_change_feed_event_triggers_refetch(client, token, make_order, staff, branch):
    order = make_order()
    first = order.items[0].id
    bridge = FlaskBridge(client)
    api = make_api(bridge, token)

    async def scenario():
        async with api:
            await api.fetch_order(order.id)
            subscription = api.subscribe(change_feed, branch.id)
            try:
                settlement_service.settle_return(
                    order.id,
                    parse_settlement_request({"items": [{"item_id": first, "returned_quantity": 2}]}),
                    actor_id=staff.id,
                    now=NOW,
                )
                # Let the marshalled callbacks run, then wait for the refetch
                for _ in range(3):
                    await asyncio.sleep(0)
                await api.wait_for_refreshes()
            finally:
                subscription.close()

    asyncio.run(scenario())
    view = api.projection.get(order.id)
    assert view["status"] == "partially_returned"
    assert view["version"] == 2
    assert not api.projection.is_stale(order.id)
    fetches = [p for p in bridge.paths if p == ("GET", f"/api/orders/{order.id}")]
    assert len(fetches) == 2


def test_events_for_uncached_orders_are_ignored(client, token, make_order):
    order = make_order()
    api = make_api(FlaskBridge(client), token)
    from rentaldesk.change_feed import ChangeEvent

    async def scenario():
        async with api:
            api.handle_change(ChangeEvent(entity="order", id=order.id, event="update", branch_id=order.branch_id))
            api.handle_change(ChangeEvent(entity="item", id=12345, event="delete", branch_id=order.branch_id))
            await api.wait_for_refreshes()

    asyncio.run(scenario())
    assert order.id not in api.projection


def test_sweep_trigger_is_throttled(client, token, make_order):
    make_order()
    clock = {"now": 1000.0}
    bridge = FlaskBridge(client)
    api = make_api(bridge, token, sweep_interval=30.0, clock=lambda: clock["now"])

    async def scenario():
        async with api:
            await api.list_orders()
            clock["now"] += 10
            await api.list_orders()
            clock["now"] += 25
            rows, total = await api.list_orders()
            return total

    total = asyncio.run(scenario())
    assert total == 1
    sweeps = [p for p in bridge.paths if p[1] == "/api/orders/expire-scheduled"]
    assert len(sweeps) == 2


def test_missing_order_is_not_found(client, token):
    api = make_api(FlaskBridge(client), token)

    async def scenario():
        async with api:
            with pytest.raises(NotFound):
                await api.fetch_order(987654)

    asyncio.run(scenario())


class TestErrorMapping:
    def test_validation_payload(self):
        err = error_from_payload(400, {
            "error": "Late fee is unusually large", "code": "late_fee_unusually_large",
            "field": "late_fee_cents", "severity": "warning", "details": {"limit_cents": 4500},
        })
        assert isinstance(err, ValidationFailed)
        assert err.severity == "warning"
        assert err.field == "late_fee_cents"
        assert err.details == {"limit_cents": 4500}

    def test_status_classes(self):
        assert isinstance(error_from_payload(409, {"error": "x"}), Conflict)
        assert isinstance(error_from_payload(404, None), NotFound)
        assert isinstance(error_from_payload(502, {}), TransientIO)
