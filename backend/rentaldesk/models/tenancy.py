from __future__ import annotations

from ..extensions import db
from rentaldesk.time_utils import to_utc_z

class Branch(db.Model):
    """
    Rental branch: the tenant partition for orders, staff, and customers.

    DESIGN:
    - Every order, customer, and non-super-admin staff member belongs to one branch
    - timezone drives the date-only projections of order instants
    - GST settings are snapshotted onto each order at creation
    - last_expiry_sweep_at throttles the expiration sweeper per branch
    """
    __tablename__ = "branches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    address = db.Column(db.Text, nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    # IANA zone name, e.g. "Asia/Kolkata"
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    # GST (basis points: 500 = 5%)
    gst_enabled = db.Column(db.Boolean, nullable=False, default=False)
    gst_rate_bps = db.Column(db.Integer, nullable=False, default=500)
    gst_included = db.Column(db.Boolean, nullable=False, default=False)

    invoice_prefix = db.Column(db.String(16), nullable=True)

    last_expiry_sweep_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Branch id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "address": self.address,
            "phone": self.phone,
            "timezone": self.timezone,
            "gst_enabled": self.gst_enabled,
            "gst_rate_bps": self.gst_rate_bps,
            "gst_included": self.gst_included,
            "invoice_prefix": self.invoice_prefix,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
