# Overview: Service-layer operations for catalog and ledger writes; the checkout engine's only path to the database.

"""
Catalog & Ledger Store

WHY: The checkout engine never reads-then-writes stock or usage counts on its
own. Every operation that has to be atomic is a single conditional statement
here, and every write is its own committed unit of work so the orchestrator
can compensate step by step.

ATOMIC PRIMITIVES:
- decrement_stock: UPDATE ... SET stock = stock - :qty WHERE stock >= :qty
- record_discount_usage: INSERT ... SELECT ... WHERE count(prior usage) < ceiling
- claim_attempt: unique constraint on checkout_attempts.idempotency_key

EVENTS: After a successful commit the store publishes a ChangeEvent on the
event stream (orders, products, customers). Inside deferred_events() the
events are buffered instead and only published when the block exits
cleanly; a block that raises drops them, so a checkout that was undone
never reaches staff screens.

DISCOUNT SCHEMA: exactly one schema is authoritative per deployment
("campaigns" or "legacy"). There is no fallback between them.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import Integer, and_, func, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    CheckoutAttempt,
    Customer,
    DiscountCampaign,
    DiscountRule,
    DiscountUsage,
    DocumentSequence,
    LegacyDiscount,
    Order,
    OrderLine,
    Payment,
    Product,
    ProductVariant,
)
from ..models.discounts import CAMPAIGN_ACTIVE, KIND_PERCENTAGE
from ..models.orders import (
    ATTEMPT_FAILED,
    ATTEMPT_PENDING,
    ORDER_PROCESSING,
    ORDER_TRANSITIONS,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
)
from ..time_utils import utcnow
from ..validation import PAYMENT_MPESA
from .concurrency import lock_for_update, run_with_retry
from .event_stream import (
    EVENT_INSERT,
    EVENT_UPDATE,
    TOPIC_CUSTOMERS,
    TOPIC_ORDERS,
    TOPIC_PRODUCTS,
    ChangeEvent,
    EventBus,
)

logger = logging.getLogger(__name__)


SCHEMA_CAMPAIGNS = "campaigns"
SCHEMA_LEGACY = "legacy"
VALID_DISCOUNT_SCHEMAS = (SCHEMA_CAMPAIGNS, SCHEMA_LEGACY)

RECEIPT_DOCUMENT_TYPE = "RECEIPT"
RECEIPT_PREFIX = "R"


class LedgerError(Exception):
    """Raised for catalog/ledger operation errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStock(LedgerError):
    """The conditional decrement found less stock than requested."""

    def __init__(self, product_id: int, requested: int, available: int | None, variant_id: int | None = None):
        super().__init__(
            "Insufficient stock",
            details={
                "product_id": product_id,
                "variant_id": variant_id,
                "requested_quantity": requested,
                "available": available,
            },
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class UsageCeilingReached(LedgerError):
    """A usage row was refused because it would exceed a campaign ceiling."""


class AttemptConflict(LedgerError):
    """The idempotency key is already claimed by another attempt."""


class OrderTransitionError(LedgerError):
    """Requested order status change is not allowed."""


class PaymentNotFound(LedgerError):
    """No payment carries the given reference."""


class PaymentStateError(LedgerError):
    """The payment already settled the other way."""


@dataclass(frozen=True)
class StockReservation:
    product_id: int
    quantity: int
    variant_id: int | None = None

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "variant_id": self.variant_id, "quantity": self.quantity}


@dataclass(frozen=True)
class DiscountCandidate:
    """Schema-independent view of one applicable campaign rule."""
    campaign_id: int
    rule_id: int | None
    kind: str
    discount_value: int
    start_date: datetime
    end_date: datetime
    campaign_name: str = ""
    minimum_quantity: int = 1
    maximum_quantity: int | None = None
    buy_quantity: int | None = None
    get_quantity: int | None = None
    maximum_usage_per_customer: int | None = None
    maximum_total_usage: int | None = None


@dataclass(frozen=True)
class UsageLimits:
    max_per_customer: int | None = None
    max_total: int | None = None

    @property
    def is_unlimited(self) -> bool:
        return self.max_per_customer is None and self.max_total is None


class LedgerStore:
    """SQLAlchemy implementation of the Catalog & Ledger Store contract."""

    def __init__(self, bus: EventBus | None = None, discount_schema: str = SCHEMA_CAMPAIGNS):
        if discount_schema not in VALID_DISCOUNT_SCHEMAS:
            raise ValueError(
                f"Unknown DISCOUNT_SCHEMA {discount_schema!r}; expected one of {list(VALID_DISCOUNT_SCHEMAS)}"
            )
        self.bus = bus
        self.discount_schema = discount_schema
        self._local = threading.local()

    # =========================================================================
    # CATALOG
    # =========================================================================

    def get_product(self, product_id: int) -> Product | None:
        return db.session.get(Product, product_id)

    def get_variant(self, variant_id: int) -> ProductVariant | None:
        return db.session.get(ProductVariant, variant_id)

    # =========================================================================
    # STOCK
    # =========================================================================

    def decrement_stock(self, product_id: int, quantity: int, variant_id: int | None = None) -> StockReservation:
        """
        Atomically take `quantity` units if (and only if) enough are on hand.

        Raises InsufficientStock without changing anything otherwise.
        """
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        model, target_id = self._stock_target(product_id, variant_id)

        def _op() -> int:
            stmt = (
                update(model)
                .where(model.id == target_id, model.stock >= quantity)
                .values(stock=model.stock - quantity)
                .returning(model.stock)
            )
            if variant_id is not None:
                stmt = stmt.where(ProductVariant.product_id == product_id)
            row = db.session.execute(stmt.execution_options(synchronize_session=False)).first()
            if row is None:
                db.session.rollback()
                available = db.session.query(model.stock).filter(model.id == target_id).scalar()
                raise InsufficientStock(product_id, quantity, available, variant_id=variant_id)
            db.session.commit()
            return int(row[0])

        new_stock = run_with_retry(_op)
        self._publish_stock_change(product_id, variant_id, old_stock=new_stock + quantity, new_stock=new_stock)
        return StockReservation(product_id=product_id, quantity=quantity, variant_id=variant_id)

    def release_stock(self, reservation: StockReservation) -> None:
        """Compensating increment for a reservation made by decrement_stock."""
        model, target_id = self._stock_target(reservation.product_id, reservation.variant_id)

        def _op() -> int:
            stmt = (
                update(model)
                .where(model.id == target_id)
                .values(stock=model.stock + reservation.quantity)
                .returning(model.stock)
            )
            row = db.session.execute(stmt.execution_options(synchronize_session=False)).first()
            if row is None:
                db.session.rollback()
                raise LedgerError("Cannot release stock for missing product", details=reservation.to_dict())
            db.session.commit()
            return int(row[0])

        new_stock = run_with_retry(_op)
        self._publish_stock_change(
            reservation.product_id,
            reservation.variant_id,
            old_stock=new_stock - reservation.quantity,
            new_stock=new_stock,
        )

    def _stock_target(self, product_id: int, variant_id: int | None):
        if variant_id is None:
            return Product, product_id
        return ProductVariant, variant_id

    def _publish_stock_change(self, product_id: int, variant_id: int | None, *, old_stock: int, new_stock: int) -> None:
        if self.bus is None:
            return
        product = db.session.get(Product, product_id)
        variant = db.session.get(ProductVariant, variant_id) if variant_id is not None else None
        row = {
            "id": product_id,
            "name": product.name if product else None,
            "variant_id": variant_id,
            "variant_label": variant.label if variant else None,
            "stock": new_stock,
        }
        old = dict(row, stock=old_stock)
        self._emit(ChangeEvent(topic=TOPIC_PRODUCTS, kind=EVENT_UPDATE, row=row, old=old))

    # =========================================================================
    # ORDERS & PAYMENTS
    # =========================================================================

    def next_receipt_number(self, pad: int = 6) -> str:
        """Atomically allocate the next receipt number (R-000001, R-000002, ...)."""

        def _op() -> int:
            stmt = (
                update(DocumentSequence)
                .where(DocumentSequence.document_type == RECEIPT_DOCUMENT_TYPE)
                .values(next_number=DocumentSequence.next_number + 1)
                .returning(DocumentSequence.next_number)
            )
            row = db.session.execute(stmt.execution_options(synchronize_session=False)).first()
            if row is not None:
                db.session.commit()
                return int(row[0]) - 1

            seq = DocumentSequence(document_type=RECEIPT_DOCUMENT_TYPE, next_number=2)
            db.session.add(seq)
            try:
                db.session.commit()
                return 1
            except IntegrityError:
                # Another terminal created the row first; take the next value from it.
                db.session.rollback()
                row = db.session.execute(stmt.execution_options(synchronize_session=False)).first()
                if row is None:
                    raise
                db.session.commit()
                return int(row[0]) - 1

        number = run_with_retry(_op)
        return f"{RECEIPT_PREFIX}-{str(number).zfill(pad)}"

    def create_order(
        self,
        *,
        receipt_number: str,
        idempotency_key: str,
        subtotal_cents: int,
        discount_cents: int,
        tax_cents: int,
        total_cents: int,
        customer_id: int | None = None,
        cashier_id: int | None = None,
        channel: str = "pos",
        status: str = ORDER_PROCESSING,
    ) -> Order:
        order = Order(
            receipt_number=receipt_number,
            idempotency_key=idempotency_key,
            customer_id=customer_id,
            cashier_id=cashier_id,
            channel=channel,
            status=status,
            subtotal_cents=subtotal_cents,
            discount_cents=discount_cents,
            tax_cents=tax_cents,
            total_cents=total_cents,
        )
        db.session.add(order)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        self._publish(TOPIC_ORDERS, EVENT_INSERT, order.to_dict())
        return order

    def create_order_lines(self, order_id: int, lines: Iterable[dict]) -> list[OrderLine]:
        rows = [
            OrderLine(
                order_id=order_id,
                product_id=line["product_id"],
                variant_id=line.get("variant_id"),
                description=line["description"],
                quantity=line["quantity"],
                list_price_cents=line["list_price_cents"],
                discount_cents=line.get("discount_cents", 0),
                unit_price_cents=line["unit_price_cents"],
                campaign_id=line.get("campaign_id"),
            )
            for line in lines
        ]
        db.session.add_all(rows)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return rows

    def create_payment(
        self,
        *,
        order_id: int,
        method: str,
        amount_cents: int,
        tendered_cents: int | None = None,
        change_cents: int = 0,
        reference: str | None = None,
        authorized_by: int | None = None,
        status: str = PAYMENT_COMPLETED,
    ) -> Payment:
        payment = Payment(
            order_id=order_id,
            method=method,
            amount_cents=amount_cents,
            tendered_cents=tendered_cents,
            change_cents=change_cents,
            reference=reference,
            authorized_by=authorized_by,
            status=status,
        )
        db.session.add(payment)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return payment

    def get_order(self, order_id: int) -> Order | None:
        return db.session.get(Order, order_id)

    def update_order_status(self, order_id: int, status: str) -> Order:
        """
        Move an order along pending -> processing -> completed (or cancelled).

        Same-status updates are a no-op. Publishes an orders/update event.
        """
        def _op():
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None:
                raise OrderTransitionError("Order not found", details={"order_id": order_id})
            if order.status == status:
                return order, None
            allowed = ORDER_TRANSITIONS.get(order.status, set())
            if status not in allowed:
                db.session.rollback()
                raise OrderTransitionError(
                    f"Cannot move order from {order.status} to {status}",
                    details={"order_id": order_id, "from": order.status, "to": status},
                )
            old = order.to_dict()
            order.status = status
            db.session.commit()
            return order, old

        order, old = run_with_retry(_op)
        if old is not None:
            self._publish(TOPIC_ORDERS, EVENT_UPDATE, order.to_dict(), old=old)
        return order

    def update_payment_status(self, payment_id: int, status: str) -> Payment:
        """Set a payment's status (e.g. void a completed payment to failed). Same-status is a no-op."""
        payment = db.session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound("Payment not found", details={"payment_id": payment_id})
        if payment.status == status:
            return payment
        payment.status = status
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return payment

    def confirm_payment(
        self,
        reference: str,
        succeeded: bool,
        *,
        result_code: str | None = None,
        result_desc: str | None = None,
    ) -> tuple[Payment, bool]:
        """
        Settle a pending M-Pesa payment from its transaction callback.

        The pending -> completed/failed move is one conditional UPDATE, so a
        redelivered callback cannot settle the payment twice. Returns
        (payment, changed); a redelivery of the same outcome returns
        changed=False. Raises PaymentNotFound for an unknown reference and
        PaymentStateError if the payment already settled the other way.
        """
        target = PAYMENT_COMPLETED if succeeded else PAYMENT_FAILED

        result = db.session.execute(
            update(Payment)
            .where(
                Payment.reference == reference,
                Payment.method == PAYMENT_MPESA,
                Payment.status == PAYMENT_PENDING,
            )
            .values(status=target, result_code=result_code, result_desc=result_desc)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            db.session.commit()
            db.session.expire_all()
        else:
            db.session.rollback()

        payment = (
            db.session.query(Payment)
            .filter(Payment.reference == reference, Payment.method == PAYMENT_MPESA)
            .order_by(Payment.id.desc())
            .first()
        )
        if payment is None:
            raise PaymentNotFound("No M-Pesa payment with this reference", details={"reference": reference})
        if not changed and payment.status != target:
            raise PaymentStateError(
                f"Payment already {payment.status}",
                details={"reference": reference, "status": payment.status, "requested": target},
            )
        return payment, changed

    # =========================================================================
    # DISCOUNTS
    # =========================================================================

    def query_active_discount(self, product_id: int, quantity: int, now: datetime | None = None) -> list[DiscountCandidate]:
        """
        All rules that apply to product_id at quantity right now.

        Ordered soonest-ending first, but callers must not rely on the order
        for correctness: the evaluator applies its own tie-break.
        """
        now = now or utcnow()
        if self.discount_schema == SCHEMA_LEGACY:
            return self._query_legacy_discounts(product_id, now)

        rows = (
            db.session.query(DiscountRule, DiscountCampaign)
            .join(DiscountCampaign, DiscountRule.campaign_id == DiscountCampaign.id)
            .filter(
                DiscountRule.product_id == product_id,
                DiscountCampaign.status == CAMPAIGN_ACTIVE,
                DiscountCampaign.start_date <= now,
                DiscountCampaign.end_date >= now,
                DiscountRule.minimum_quantity <= quantity,
                or_(DiscountRule.maximum_quantity.is_(None), DiscountRule.maximum_quantity >= quantity),
            )
            .order_by(DiscountCampaign.end_date.asc(), DiscountCampaign.id.asc(), DiscountRule.id.asc())
            .all()
        )
        return [
            DiscountCandidate(
                campaign_id=campaign.id,
                rule_id=rule.id,
                kind=campaign.kind,
                discount_value=rule.discount_value,
                start_date=campaign.start_date,
                end_date=campaign.end_date,
                campaign_name=campaign.name,
                minimum_quantity=rule.minimum_quantity,
                maximum_quantity=rule.maximum_quantity,
                buy_quantity=rule.buy_quantity,
                get_quantity=rule.get_quantity,
                maximum_usage_per_customer=rule.maximum_usage_per_customer,
                maximum_total_usage=rule.maximum_total_usage,
            )
            for rule, campaign in rows
        ]

    def _query_legacy_discounts(self, product_id: int, now: datetime) -> list[DiscountCandidate]:
        rows = (
            db.session.query(LegacyDiscount)
            .filter(
                LegacyDiscount.product_id == product_id,
                LegacyDiscount.start_date <= now,
                LegacyDiscount.end_date >= now,
            )
            .order_by(LegacyDiscount.end_date.asc(), LegacyDiscount.id.asc())
            .all()
        )
        return [
            DiscountCandidate(
                campaign_id=row.id,
                rule_id=None,
                kind=KIND_PERCENTAGE,
                discount_value=row.percentage,
                start_date=row.start_date,
                end_date=row.end_date,
                campaign_name=f"{row.percentage}% off",
            )
            for row in rows
        ]

    def query_usage_count(self, campaign_id: int, customer_id: int | None = None) -> int:
        """Usage rows for the campaign; restricted to one customer when customer_id is given."""
        q = db.session.query(func.count(DiscountUsage.id)).filter(DiscountUsage.campaign_id == campaign_id)
        if customer_id is not None:
            q = q.filter(DiscountUsage.customer_id == customer_id)
        return int(q.scalar() or 0)

    def get_campaign_limits(self, campaign_id: int) -> UsageLimits:
        """Tightest non-null ceilings across the campaign's rules."""
        if self.discount_schema == SCHEMA_LEGACY:
            return UsageLimits()
        per_customer, total = (
            db.session.query(
                func.min(DiscountRule.maximum_usage_per_customer),
                func.min(DiscountRule.maximum_total_usage),
            )
            .filter(DiscountRule.campaign_id == campaign_id)
            .one()
        )
        return UsageLimits(max_per_customer=per_customer, max_total=total)

    def record_discount_usage(
        self,
        *,
        campaign_id: int,
        order_id: int,
        discount_cents: int,
        quantity: int,
        customer_id: int | None = None,
        rule_id: int | None = None,
        max_per_customer: int | None = None,
        max_total: int | None = None,
    ) -> None:
        """
        Append one usage row, refusing it if a ceiling would be exceeded.

        The ceiling check and the insert are one statement, so two terminals
        that both passed the usage pre-check cannot both record the last
        available use. Raises UsageCeilingReached when refused.
        """
        conditions = []
        if max_total is not None:
            total_used = (
                select(func.count(DiscountUsage.id))
                .where(DiscountUsage.campaign_id == campaign_id)
                .scalar_subquery()
            )
            conditions.append(total_used < max_total)
        if max_per_customer is not None and customer_id is not None:
            customer_used = (
                select(func.count(DiscountUsage.id))
                .where(DiscountUsage.campaign_id == campaign_id, DiscountUsage.customer_id == customer_id)
                .scalar_subquery()
            )
            conditions.append(customer_used < max_per_customer)

        def _op() -> int:
            values = select(
                literal(campaign_id, Integer),
                literal(rule_id, Integer),
                literal(order_id, Integer),
                literal(customer_id, Integer),
                literal(discount_cents, Integer),
                literal(quantity, Integer),
            )
            if conditions:
                values = values.where(and_(*conditions))
            stmt = insert(DiscountUsage.__table__).from_select(
                ["campaign_id", "rule_id", "order_id", "customer_id", "discount_cents", "quantity"],
                values,
            )
            result = db.session.execute(stmt)
            if result.rowcount != 1:
                db.session.rollback()
                return 0
            db.session.commit()
            return 1

        if not run_with_retry(_op):
            raise UsageCeilingReached(
                "Discount usage ceiling reached",
                details={
                    "campaign_id": campaign_id,
                    "customer_id": customer_id,
                    "max_per_customer": max_per_customer,
                    "max_total": max_total,
                },
            )

    def delete_order_usage(self, order_id: int) -> int:
        """Remove usage rows recorded for an order that was undone. Returns rows removed."""
        removed = db.session.query(DiscountUsage).filter(DiscountUsage.order_id == order_id).delete(
            synchronize_session=False
        )
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return removed

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    def register_customer(self, email: str, full_name: str | None = None, role: str = "customer") -> Customer:
        customer = Customer(email=email.strip().lower(), full_name=full_name, role=role)
        db.session.add(customer)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise LedgerError("Customer already registered", details={"email": email})
        self._publish(TOPIC_CUSTOMERS, EVENT_INSERT, customer.to_dict())
        return customer

    # =========================================================================
    # IDEMPOTENCY
    # =========================================================================

    def get_attempt(self, idempotency_key: str) -> CheckoutAttempt | None:
        return db.session.query(CheckoutAttempt).filter_by(idempotency_key=idempotency_key).first()

    def claim_attempt(self, idempotency_key: str) -> CheckoutAttempt:
        """
        Claim an idempotency key for a new commit.

        A fresh key inserts a pending attempt; a key whose previous attempt
        failed cleanly is re-armed. Any other state raises AttemptConflict.
        """
        existing = self.get_attempt(idempotency_key)
        if existing is None:
            attempt = CheckoutAttempt(idempotency_key=idempotency_key, status=ATTEMPT_PENDING, phase="validating")
            db.session.add(attempt)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise AttemptConflict(
                    "Idempotency key already claimed",
                    details={"idempotency_key": idempotency_key},
                )
            return attempt

        if existing.status != ATTEMPT_FAILED:
            raise AttemptConflict(
                "Idempotency key already claimed",
                details={"idempotency_key": idempotency_key, "status": existing.status},
            )

        result = db.session.execute(
            update(CheckoutAttempt)
            .where(
                CheckoutAttempt.idempotency_key == idempotency_key,
                CheckoutAttempt.status == ATTEMPT_FAILED,
            )
            .values(status=ATTEMPT_PENDING, phase="validating", error=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise AttemptConflict(
                "Idempotency key already claimed",
                details={"idempotency_key": idempotency_key},
            )
        db.session.commit()
        db.session.expire_all()
        return self.get_attempt(idempotency_key)

    def update_attempt(
        self,
        idempotency_key: str,
        *,
        status: str | None = None,
        phase: str | None = None,
        order_id: int | None = None,
        receipt: dict | None = None,
        error: dict | None = None,
    ) -> CheckoutAttempt:
        attempt = self.get_attempt(idempotency_key)
        if attempt is None:
            raise LedgerError("Checkout attempt not found", details={"idempotency_key": idempotency_key})
        if status is not None:
            attempt.status = status
        if phase is not None:
            attempt.phase = phase
        if order_id is not None:
            attempt.order_id = order_id
        if receipt is not None:
            attempt.receipt = receipt
        if error is not None:
            attempt.error = error
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return attempt

    def finish_attempt(
        self,
        idempotency_key: str,
        status: str,
        *,
        order_id: int | None = None,
        receipt: dict | None = None,
        error: dict | None = None,
    ) -> CheckoutAttempt:
        """Record the terminal outcome of a commit attempt."""
        return self.update_attempt(
            idempotency_key,
            status=status,
            order_id=order_id,
            receipt=receipt,
            error=error,
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    @contextmanager
    def deferred_events(self):
        """
        Hold back change events published on this thread until the block exits.

        Clean exit publishes them in order; an exception drops them. Nested
        blocks hand their events to the enclosing one.
        """
        outer = getattr(self._local, "outbox", None)
        outbox: list[ChangeEvent] = []
        self._local.outbox = outbox
        try:
            yield outbox
        except BaseException:
            self._local.outbox = outer
            if outbox:
                logger.info("Dropped %d change events from undone writes", len(outbox))
            raise
        self._local.outbox = outer
        if outer is not None:
            outer.extend(outbox)
            return
        for event in outbox:
            self.bus.publish(event)

    def _publish(self, topic: str, kind: str, row: dict, old: dict | None = None) -> None:
        if self.bus is not None:
            self._emit(ChangeEvent(topic=topic, kind=kind, row=row, old=old))

    def _emit(self, event: ChangeEvent) -> None:
        outbox = getattr(self._local, "outbox", None)
        if outbox is not None:
            outbox.append(event)
        else:
            self.bus.publish(event)
