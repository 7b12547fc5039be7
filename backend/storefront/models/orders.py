from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

# Allowed status transitions. Completed and cancelled are terminal for the
# checkout engine; back-office corrections go through update_order_status.
ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_COMPLETED, ORDER_CANCELLED},
    ORDER_COMPLETED: set(),
    ORDER_CANCELLED: set(),
}

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"

CHANNEL_POS = "pos"
CHANNEL_ONLINE = "online"

ATTEMPT_PENDING = "pending"
ATTEMPT_COMMITTED = "committed"
ATTEMPT_DEGRADED = "degraded"
ATTEMPT_FAILED = "failed"
ATTEMPT_NEEDS_RECONCILIATION = "needs_reconciliation"


class Order(db.Model):
    """
    Committed sale.

    INVARIANTS:
    - subtotal_cents == sum(unit_price_cents * quantity) over order lines
    - total_cents == subtotal_cents + tax_cents
    - at most one completed order per idempotency_key (claimed on checkout_attempts)
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_orders_receipt_number"),
        db.Index("ix_orders_idempotency_key", "idempotency_key"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(32), nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    channel = db.Column(db.String(16), nullable=False, default="pos")

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    lines = db.relationship("OrderLine", backref=db.backref("order", lazy=True), lazy=True, order_by="OrderLine.id")
    payments = db.relationship("Payment", backref=db.backref("order", lazy=True), lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "idempotency_key": self.idempotency_key,
            "customer_id": self.customer_id,
            "cashier_id": self.cashier_id,
            "channel": self.channel,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderLine(db.Model):
    """
    Frozen price snapshot of one product on an order.

    unit_price_cents is what was charged per unit:
        unit_price_cents == list_price_cents - discount_cents
    Later catalog price changes never touch these rows.
    """
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    list_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)  # per unit
    unit_price_cents = db.Column(db.Integer, nullable=False)

    campaign_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "description": self.description,
            "quantity": self.quantity,
            "list_price_cents": self.list_price_cents,
            "discount_cents": self.discount_cents,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "campaign_id": self.campaign_id,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Payment record for an order.

    METHODS:
    - cash: tendered amount and change recorded; authorized_by (the staff
      member countersigning the tender) is required
    - mpesa: reference holds the M-Pesa confirmation code, or for online
      orders the STK CheckoutRequestID until the callback confirms it
    - card: reference holds the card authorization code (optional)
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_COMPLETED, index=True)

    reference = db.Column(db.String(128), nullable=True, index=True)
    result_code = db.Column(db.String(16), nullable=True)
    result_desc = db.Column(db.String(255), nullable=True)
    tendered_cents = db.Column(db.Integer, nullable=True)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    authorized_by = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "reference": self.reference,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "tendered_cents": self.tendered_cents,
            "change_cents": self.change_cents,
            "authorized_by": self.authorized_by,
            "created_at": to_utc_z(self.created_at),
        }


class CheckoutAttempt(db.Model):
    """
    Durable record of one client-generated idempotency key.

    WHY: Re-submitting a commit with the same key must return the original
    receipt instead of decrementing stock or creating a second order.
    The unique constraint on idempotency_key is the claim.
    """
    __tablename__ = "checkout_attempts"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_checkout_attempts_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), nullable=False)

    status = db.Column(db.String(32), nullable=False, default=ATTEMPT_PENDING, index=True)
    phase = db.Column(db.String(16), nullable=False, default="validating")

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    receipt = db.Column(db.JSON, nullable=True)
    error = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "phase": self.phase,
            "order_id": self.order_id,
            "receipt": self.receipt,
            "error": self.error,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
