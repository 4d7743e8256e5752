# Overview: Client-side cache of order snapshots with optimistic overlays.

"""
Optimistic Order Projection

Holds the last server-confirmed snapshot of each order plus the tentative
patches of writes still in flight. Readers see the confirmed snapshot with
every pending patch applied in the order the writes were issued.

RECONCILIATION CONTRACT:
- apply_optimistic(key, patch) overlays a tentative patch and returns the
  PendingWrite handle for it
- reconcile(key, authoritative, write) drops the write's patch and installs
  the server's snapshot
- rollback(key, write) drops the write's patch; the view falls back to the
  latest confirmed snapshot
- put()/reconcile() never let an older snapshot replace a newer one
  (snapshots carry the order's "version")
- invalidate(key) marks an entry stale; the next confirmed snapshot clears it

Not thread-safe: use it from the client's event loop only.
"""

from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PendingWrite:
    token: int
    patch: dict


@dataclass
class _Entry:
    confirmed: dict | None = None
    pending: list[PendingWrite] = field(default_factory=list)
    stale: bool = False


def _version(snapshot: dict | None) -> int:
    if not snapshot:
        return -1
    return snapshot.get("version") or 0


def merge_patch(snapshot: dict, patch: dict) -> dict:
    """
    Apply a patch to a snapshot copy.

    Top-level keys replace; an "items" patch is a list of partial item dicts
    merged into the snapshot's items by "id".
    """
    merged = copy.deepcopy(snapshot)
    for key, value in patch.items():
        if key == "items" and isinstance(merged.get("items"), list):
            by_id = {item_patch["id"]: item_patch for item_patch in value if "id" in item_patch}
            for item in merged["items"]:
                item_patch = by_id.get(item.get("id"))
                if item_patch:
                    item.update(item_patch)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class OrderProjection:
    def __init__(self):
        self._entries: dict[int, _Entry] = {}
        self._tokens = itertools.count(1)

    def __contains__(self, key: int) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.confirmed is not None

    def keys(self) -> list[int]:
        return [key for key, entry in self._entries.items() if entry.confirmed is not None]

    def put(self, key: int, authoritative: dict) -> bool:
        """Install a server snapshot. Returns False if a newer one is already held."""
        entry = self._entries.setdefault(key, _Entry())
        if entry.confirmed is not None and _version(authoritative) < _version(entry.confirmed):
            return False
        entry.confirmed = copy.deepcopy(authoritative)
        entry.stale = False
        return True

    def reconcile(self, key: int, authoritative: dict, write: PendingWrite | None = None) -> bool:
        """Confirm a write with the server's result. The write's patch is dropped either way."""
        if write is not None:
            self._drop(key, write)
        return self.put(key, authoritative)

    def apply_optimistic(self, key: int, patch: dict) -> PendingWrite:
        entry = self._entries.setdefault(key, _Entry())
        write = PendingWrite(token=next(self._tokens), patch=copy.deepcopy(patch))
        entry.pending.append(write)
        return write

    def rollback(self, key: int, write: PendingWrite) -> None:
        self._drop(key, write)

    def invalidate(self, key: int) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True

    def is_stale(self, key: int) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def pending_count(self, key: int) -> int:
        entry = self._entries.get(key)
        return len(entry.pending) if entry else 0

    def confirmed(self, key: int) -> dict | None:
        entry = self._entries.get(key)
        if entry is None or entry.confirmed is None:
            return None
        return copy.deepcopy(entry.confirmed)

    def get(self, key: int) -> dict | None:
        """Confirmed snapshot with pending patches applied, or None if nothing is cached."""
        entry = self._entries.get(key)
        if entry is None or entry.confirmed is None:
            return None
        view = copy.deepcopy(entry.confirmed)
        for write in entry.pending:
            view = merge_patch(view, write.patch)
        return view

    def discard(self, key: int) -> None:
        self._entries.pop(key, None)

    def find_item_owner(self, item_id: int) -> int | None:
        """Key of the cached order holding an item, if any."""
        for key, entry in self._entries.items():
            for item in (entry.confirmed or {}).get("items") or []:
                if item.get("id") == item_id:
                    return key
        return None

    def _drop(self, key: int, write: PendingWrite) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.pending = [w for w in entry.pending if w.token != write.token]
