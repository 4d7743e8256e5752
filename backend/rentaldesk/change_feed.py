# Overview: In-process publish/subscribe channel for order change notifications.

"""
Order change feed.

Every committed write publishes a ChangeEvent for its branch. Subscribers
(API clients, push bridges) use events only as invalidation signals: the
payload says *what* changed, never *how*, so receivers refetch from the
server instead of trusting event contents.

Callbacks run on the publishing thread. A failing subscriber is logged and
does not stop delivery to the others.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable


logger = logging.getLogger(__name__)

ENTITIES = ("order", "item")
EVENTS = ("insert", "update", "delete")


@dataclass(frozen=True)
class ChangeEvent:
    entity: str
    id: int
    event: str
    branch_id: int

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "id": self.id,
            "event": self.event,
            "branch_id": self.branch_id,
        }


class Subscription:
    """Handle returned by ChangeFeed.subscribe; close() unsubscribes."""

    def __init__(self, feed: "ChangeFeed", branch_id: int, key: int):
        self._feed = feed
        self.branch_id = branch_id
        self._key = key
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._feed._remove(self.branch_id, self._key)
            self.closed = True


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: dict[int, dict[int, Callable[[ChangeEvent], None]]] = {}

    def subscribe(self, branch_id: int, callback: Callable[[ChangeEvent], None]) -> Subscription:
        with self._lock:
            key = next(self._ids)
            self._subscribers.setdefault(branch_id, {})[key] = callback
        return Subscription(self, branch_id, key)

    def _remove(self, branch_id: int, key: int) -> None:
        with self._lock:
            callbacks = self._subscribers.get(branch_id)
            if callbacks is None:
                return
            callbacks.pop(key, None)
            if not callbacks:
                del self._subscribers[branch_id]

    def subscriber_count(self, branch_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(branch_id, {}))

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to the branch's subscribers. Returns deliveries made."""
        if event.entity not in ENTITIES:
            raise ValueError(f"Unknown change entity: {event.entity}")
        if event.event not in EVENTS:
            raise ValueError(f"Unknown change event: {event.event}")

        with self._lock:
            callbacks = list(self._subscribers.get(event.branch_id, {}).values())

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception:
                logger.exception("Change feed subscriber failed for %s", event)
        return delivered
