from __future__ import annotations

import json

from ..extensions import db
from rentaldesk.time_utils import to_utc_z


class OrderAuditEvent(db.Model):
    """
    Append-only order timeline.

    Who did what to an order, and when. Rows are
    written in the same transaction as the change they describe and are
    never updated or deleted. actor_id is null for system actions such as
    the expiration sweeper.
    """
    __tablename__ = "order_audit_events"
    __table_args__ = (
        db.Index("ix_order_audit_order_occurred", "order_id", "occurred_at"),
        db.Index("ix_order_audit_branch_occurred", "branch_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False)

    action = db.Column(db.String(64), nullable=False)
    previous_status = db.Column(db.String(32), nullable=True)
    new_status = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # JSON text; summary of the change (counts, fees, fields touched)
    payload = db.Column(db.Text, nullable=True)

    actor_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    order = db.relationship("Order", backref=db.backref("audit_events", lazy=True))
    actor = db.relationship("Staff")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "branch_id": self.branch_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "notes": self.notes,
            "payload": json.loads(self.payload) if self.payload else None,
            "actor_id": self.actor_id,
            "actor_name": self.actor.full_name if self.actor else None,
            "timestamp": to_utc_z(self.occurred_at),
        }
