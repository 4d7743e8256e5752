from __future__ import annotations

from ..extensions import db
from rentaldesk.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer reference data.

    Orders only point at customers; search and creation forms live elsewhere.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "customer_number", name="uq_customers_branch_number"),
        db.Index("ix_customers_branch_phone", "branch_id", "phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    customer_number = db.Column(db.String(32), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    branch = db.relationship("Branch", backref=db.backref("customers", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "customer_number": self.customer_number,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
            "created_at": to_utc_z(self.created_at),
        }
