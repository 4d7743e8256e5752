from __future__ import annotations

from ..extensions import db
from rentaldesk.time_utils import to_utc_z


ORDER_STATUSES = (
    "scheduled",
    "active",
    "pending_return",
    "partially_returned",
    "flagged",
    "completed",
    "cancelled",
)

ITEM_RETURN_STATUSES = ("not_yet_returned", "returned", "missing")


class Order(db.Model):
    """
    Rental order: customer, rental window, money, and owned items.

    The order row is the serialization point for every mutation of the
    aggregate. version_id is the optimistic lock; any write to the order or
    its items also writes the order row, so the counter moves with the whole
    aggregate.

    DESIGN:
    - start_at/end_at are authoritative instants (UTC)
    - start_date/end_date are branch-local date projections for calendars
    - total_cents = subtotal + gst + late fee + sum(item damage fees), recomputed
    - Orders are never deleted; cancelled is terminal
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "invoice_number", name="uq_orders_branch_invoice"),
        db.Index("ix_orders_branch_status", "branch_id", "status"),
        db.Index("ix_orders_branch_start", "branch_id", "start_at"),
        db.Index("ix_orders_branch_start_date", "branch_id", "start_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)

    invoice_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(32), nullable=False, default="scheduled", index=True)

    # Booking instant (creation time)
    booking_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Rental window
    start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Money (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    gst_cents = db.Column(db.Integer, nullable=False, default=0)
    gst_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    gst_included = db.Column(db.Boolean, nullable=False, default=False)
    late_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    damage_fee_total_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    late_returned = db.Column(db.Boolean, nullable=False, default=False)

    notes = db.Column(db.Text, nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    branch = db.relationship("Branch", backref=db.backref("orders", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    staff = db.relationship("Staff", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy="select",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
            "customer": self.customer.to_dict() if self.customer else None,
            "staff_id": self.staff_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "booking_at": to_utc_z(self.booking_at),
            "start_at": to_utc_z(self.start_at),
            "end_at": to_utc_z(self.end_at),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "started_at": to_utc_z(self.started_at),
            "subtotal_cents": self.subtotal_cents,
            "gst_cents": self.gst_cents,
            "gst_rate_bps": self.gst_rate_bps,
            "gst_included": self.gst_included,
            "late_fee_cents": self.late_fee_cents,
            "damage_fee_total_cents": self.damage_fee_total_cents,
            "total_cents": self.total_cents,
            "late_returned": self.late_returned,
            "notes": self.notes,
            "updated_at": to_utc_z(self.updated_at),
            "version": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    One rented line on an order.

    Invariants enforced by the services, not the schema:
    - 0 <= returned_quantity <= quantity
    - damage_fee_cents > 0 requires damage_description
    - line_total_cents == quantity * price_per_day_cents * days
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_order_id", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    product_name = db.Column(db.String(255), nullable=True)
    # Opaque reference owned by the media store
    photo_url = db.Column(db.Text, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price_per_day_cents = db.Column(db.Integer, nullable=False)
    days = db.Column(db.Integer, nullable=False, default=1)
    line_total_cents = db.Column(db.Integer, nullable=False)

    return_status = db.Column(db.String(32), nullable=False, default="not_yet_returned")
    returned_quantity = db.Column(db.Integer, nullable=False, default=0)
    actual_return_at = db.Column(db.DateTime(timezone=True), nullable=True)
    late_return = db.Column(db.Boolean, nullable=False, default=False)
    damage_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    damage_description = db.Column(db.Text, nullable=True)
    missing_note = db.Column(db.Text, nullable=True)

    order = db.relationship("Order", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_name": self.product_name,
            "photo_url": self.photo_url,
            "quantity": self.quantity,
            "price_per_day_cents": self.price_per_day_cents,
            "days": self.days,
            "line_total_cents": self.line_total_cents,
            "return_status": self.return_status,
            "returned_quantity": self.returned_quantity,
            "actual_return_at": to_utc_z(self.actual_return_at),
            "late_return": self.late_return,
            "damage_fee_cents": self.damage_fee_cents,
            "damage_description": self.damage_description,
            "missing_note": self.missing_note,
        }
