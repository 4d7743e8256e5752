# Overview: Async API client for order writes with optimistic projection and change-feed refresh.

"""
Orders API Client

Wraps the /api/orders endpoints on httpx.AsyncClient and keeps an
OrderProjection current:

1. Validate locally with the same parsers and checks the server runs
2. Overlay the probable outcome on the cached order
3. Send the write
4. Success: reconcile with the server's snapshot
   Any error (including cancellation): roll the overlay back, re-raise;
   unless the server rejected the input, mark the order stale because the
   write may have landed

HTTP errors come back as the same typed errors the services raise
(rentaldesk.errors); connection failures surface as TransientIO.

Change-feed events only mark cached orders stale and schedule a refetch.
Event payloads are never applied to the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import httpx

from ..change_feed import ChangeEvent, ChangeFeed, Subscription
from ..errors import Conflict, NotFound, RentalError, TransientIO, ValidationFailed, error_from_payload
from ..services.cancellation_policy import CancellationPolicy, can_cancel
from ..services.settlement_service import target_state
from ..services.status_service import canonical_status
from ..validation import (
    check_item_outcome,
    check_late_fee,
    parse_settlement_request,
    parse_status_transition,
)
from .projection import OrderProjection, PendingWrite
from ..time_utils import parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 10.0
DEFAULT_SWEEP_INTERVAL = 30.0


class OrdersClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        projection: OrderProjection | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        policy: CancellationPolicy | None = None,
        late_fee_multiplier: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.projection = projection or OrderProjection()
        self.policy = policy or CancellationPolicy()
        self.late_fee_multiplier = late_fee_multiplier
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep: float | None = None
        self._refreshes: dict[int, asyncio.Task] = {}
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        if token:
            self.set_token(token)

    async def __aenter__(self) -> "OrdersClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for task in list(self._refreshes.values()):
            task.cancel()
        self._refreshes.clear()
        await self._http.aclose()

    def set_token(self, token: str) -> None:
        self._http.headers["Authorization"] = f"Bearer {token}"

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, *, json: Any = None, params: dict | None = None) -> dict:
        try:
            response = await self._http.request(method, path, json=json, params=params)
        except httpx.TransportError as exc:
            raise TransientIO(f"Could not reach the server: {exc}") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.status_code >= 400:
            logger.debug("API error %s %s: %s %s", method, path, response.status_code, data)
            raise error_from_payload(response.status_code, data if isinstance(data, dict) else None)
        return data

    async def login(self, username: str, password: str) -> dict:
        data = await self._request("POST", "/api/auth/login", json={"username": username, "password": password})
        self.set_token(data["token"])
        return data

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_order(self, order_id: int) -> dict:
        """Load an order from the server into the projection and return the projected view."""
        data = await self._request("GET", f"/api/orders/{order_id}")
        self.projection.put(order_id, data["order"])
        return self.projection.get(order_id)

    async def get_order(self, order_id: int) -> dict:
        """Projected view, refetching when nothing is cached or the entry is stale."""
        if self.projection.is_stale(order_id):
            return await self.fetch_order(order_id)
        return self.projection.get(order_id)

    async def list_orders(self, **filters) -> tuple[list[dict], int]:
        await self.maybe_sweep()
        params = {k: v for k, v in filters.items() if v is not None}
        data = await self._request("GET", "/api/orders", params=params)
        for snapshot in data["orders"]:
            self.projection.put(snapshot["id"], snapshot)
        return [self.projection.get(row["id"]) for row in data["orders"]], data["total"]

    async def timeline(self, order_id: int) -> list[dict]:
        data = await self._request("GET", f"/api/orders/{order_id}/timeline")
        return data["events"]

    async def maybe_sweep(self) -> dict | None:
        """Ask the server to expire stale bookings, at most once per sweep interval."""
        now = self._clock()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return None
        self._last_sweep = now
        try:
            return await self._request("POST", "/api/orders/expire-scheduled")
        except RentalError as e:
            logger.warning("Expiry sweep request failed: %s", e.message)
            return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def _optimistic_write(self, order_id: int, patch: dict | None, method: str, path: str, payload: dict) -> dict:
        write: PendingWrite | None = None
        if patch and order_id in self.projection:
            write = self.projection.apply_optimistic(order_id, patch)

        try:
            data = await self._request(method, path, json=payload)
        except (RentalError, asyncio.CancelledError) as exc:
            if write is not None:
                self.projection.rollback(order_id, write)
            # Anything but a validation answer may have been committed
            if not isinstance(exc, ValidationFailed):
                self.projection.invalidate(order_id)
            raise

        snapshot = data["order"]
        self.projection.reconcile(order_id, snapshot, write)
        return data

    async def transition_status(
        self,
        order_id: int,
        status: str,
        *,
        late_fee_cents: int | None = None,
        confirm_large_late_fee: bool = False,
        now=None,
    ) -> dict:
        payload: dict[str, Any] = {"status": status}
        if late_fee_cents is not None:
            payload["late_fee_cents"] = late_fee_cents
        if confirm_large_late_fee:
            payload["confirm_large_late_fee"] = True
        parse_status_transition(payload)

        cached = self.projection.get(order_id)
        patch = None
        if cached is not None:
            if status == "cancelled" and not can_cancel(_policy_view(cached), now or utcnow(), self.policy):
                raise Conflict("Cancellation window has closed for this order", code="cancellation_window_closed")
            if late_fee_cents is not None and late_fee_cents != (cached.get("late_fee_cents") or 0):
                check_late_fee(
                    late_fee_cents,
                    subtotal_cents=cached.get("subtotal_cents") or 0,
                    gst_cents=cached.get("gst_cents") or 0,
                    multiplier=self.late_fee_multiplier,
                    confirmed=confirm_large_late_fee,
                )
            payload["expected_version"] = cached.get("version")
            patch = {"status": status}
            if late_fee_cents is not None:
                patch["late_fee_cents"] = late_fee_cents

        await self._optimistic_write(order_id, patch, "POST", f"/api/orders/{order_id}/status", payload)
        return self.projection.get(order_id)

    async def start_rental(self, order_id: int) -> dict:
        patch = {"status": "active"} if order_id in self.projection else None
        await self._optimistic_write(order_id, patch, "POST", f"/api/orders/{order_id}/start", {})
        return self.projection.get(order_id)

    async def settle_return(
        self,
        order_id: int,
        items: list[dict],
        *,
        late_fee_cents: int | None = None,
        confirm_large_late_fee: bool = False,
    ) -> dict:
        """
        Submit a return batch.

        Returns the server's settlement result (order_id, previous_status,
        new_status, totals, changed, order). The projection holds the
        confirmed order afterwards.
        """
        payload: dict[str, Any] = {"items": items}
        if late_fee_cents is not None:
            payload["late_fee_cents"] = late_fee_cents
        if confirm_large_late_fee:
            payload["confirm_large_late_fee"] = True
        request = parse_settlement_request(payload)

        cached = self.projection.get(order_id)
        patch = None
        if cached is not None:
            patch = self._probable_settlement(cached, request)
            payload["expected_version"] = cached.get("version")

        return await self._optimistic_write(order_id, patch, "POST", f"/api/orders/{order_id}/return", payload)

    def _probable_settlement(self, cached: dict, request) -> dict:
        items_by_id = {item["id"]: item for item in cached.get("items") or []}

        item_patches = []
        for outcome in request.items:
            item = items_by_id.get(outcome.item_id)
            if item is None:
                # Unknown to this cache; the server decides
                continue
            check_item_outcome(outcome, item["quantity"])
            target = target_state(outcome)
            item_patches.append({
                "id": outcome.item_id,
                "returned_quantity": target.returned_quantity,
                "return_status": target.return_status,
                "damage_fee_cents": target.damage_fee_cents,
                "damage_description": target.damage_description,
                "missing_note": target.missing_note,
            })

        previous_late_fee = cached.get("late_fee_cents") or 0
        late_fee = previous_late_fee if request.late_fee_cents is None else request.late_fee_cents
        if late_fee != previous_late_fee:
            check_late_fee(
                late_fee,
                subtotal_cents=cached.get("subtotal_cents") or 0,
                gst_cents=cached.get("gst_cents") or 0,
                multiplier=self.late_fee_multiplier,
                confirmed=request.confirm_large_late_fee,
            )

        patched_by_id = {p["id"]: p for p in item_patches}
        merged_items = [{**item, **patched_by_id.get(item["id"], {})} for item in items_by_id.values()]
        damage_total = sum(item.get("damage_fee_cents") or 0 for item in merged_items)

        return {
            "items": item_patches,
            "status": canonical_status(merged_items, cached["status"]),
            "late_fee_cents": late_fee,
            "damage_fee_total_cents": damage_total,
            "total_cents": (cached.get("subtotal_cents") or 0) + (cached.get("gst_cents") or 0) + late_fee + damage_total,
        }

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    def subscribe(self, feed: ChangeFeed, branch_id: int, loop: asyncio.AbstractEventLoop | None = None) -> Subscription:
        """
        Listen for remote writes in a branch.

        Must be called from the client's event loop (or given it): callbacks
        arrive on the publishing thread and are handed to the loop.
        """
        loop = loop or asyncio.get_running_loop()

        def _callback(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(self.handle_change, event)

        return feed.subscribe(branch_id, _callback)

    def handle_change(self, event: ChangeEvent) -> None:
        if event.entity == "order":
            key = event.id
        else:
            key = self.projection.find_item_owner(event.id)
        if key is None or key not in self.projection:
            return

        self.projection.invalidate(key)
        task = self._refreshes.get(key)
        if task is None or task.done():
            self._refreshes[key] = asyncio.ensure_future(self._refresh(key))

    async def _refresh(self, order_id: int) -> None:
        try:
            await self.fetch_order(order_id)
        except NotFound:
            self.projection.discard(order_id)
        except RentalError as e:
            logger.warning("Refresh of order %s failed: %s", order_id, e.message)

    async def wait_for_refreshes(self) -> None:
        tasks = [t for t in self._refreshes.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks)


def _policy_view(snapshot: dict) -> dict:
    return {
        "status": snapshot.get("status"),
        "booking_at": parse_iso_datetime(snapshot.get("booking_at")),
        "start_at": parse_iso_datetime(snapshot.get("start_at")),
    }
