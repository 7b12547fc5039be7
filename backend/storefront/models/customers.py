from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CUSTOMER_ROLES = ("customer", "worker", "admin")


class Customer(db.Model):
    """
    Shopper or staff identity referenced by orders and discount usage.

    Registration and role management are handled elsewhere; the checkout
    engine only needs a stable id for usage ceilings and order ownership.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_customers_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="customer", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "created_at": to_utc_z(self.created_at),
        }
