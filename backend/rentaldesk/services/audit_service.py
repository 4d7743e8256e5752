# Overview: Service-layer operations for the order audit log; append-only writes and timeline reads.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import OrderAuditEvent
from rentaldesk.time_utils import utcnow


def append_audit_event(
    *,
    order_id: int,
    branch_id: int,
    action: str,
    actor_id: int | None,
    previous_status: str | None = None,
    new_status: str | None = None,
    notes: str | None = None,
    payload: dict | None = None,
    occurred_at: Optional[datetime] = None,
) -> OrderAuditEvent:
    """
    Append-only order audit event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Written in the caller's transaction; committed with the change it describes.
    """
    ev = OrderAuditEvent(
        order_id=order_id,
        branch_id=branch_id,
        action=action,
        previous_status=previous_status,
        new_status=new_status,
        notes=notes,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
        actor_id=actor_id,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()  # ensures ev.id is assigned without committing
    return ev


def get_order_timeline(order_id: int) -> list[dict]:
    """Audit events for one order, newest first."""
    events = (
        db.session.query(OrderAuditEvent)
        .filter(OrderAuditEvent.order_id == order_id)
        .order_by(OrderAuditEvent.occurred_at.desc(), OrderAuditEvent.id.desc())
        .all()
    )
    return [ev.to_dict() for ev in events]


def count_events(order_id: int, action: str | None = None) -> int:
    query = db.session.query(OrderAuditEvent).filter(OrderAuditEvent.order_id == order_id)
    if action:
        query = query.filter(OrderAuditEvent.action == action)
    return query.count()
