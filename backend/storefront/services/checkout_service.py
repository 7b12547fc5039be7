# Overview: Service-layer checkout commit; turns a cart snapshot into stock decrements, an order, a payment and usage rows.

"""
Checkout Orchestrator

WHY: A sale touches several rows that cannot share one transaction from the
caller's point of view (stock per product, order, lines, payment, usage).
commit() runs them as ordered steps and undoes completed steps when a later
one fails, so the ledger never keeps a half-recorded sale.

PHASES:
    validating -> reserving -> recording -> finalizing -> committed

- validating: nothing written; failures raise ValidationError. The
  idempotency key is claimed at the end of this phase.
- reserving:  one atomic decrement per line. InsufficientStock on any line
  releases the lines already taken (reverse order) and re-raises.
- recording:  order (processing), lines, payment, order -> completed.
  Failure undoes every step taken so far, payment included
  (CommitFailure, partial). Stock and order events are held back until
  this phase succeeds and are dropped when it is undone.
- finalizing: discount usage rows. Failures here never undo the sale; the
  receipt is marked degraded and carries warnings.

ONLINE M-PESA: channel "online" with method "mpesa" records the order as
pending with a pending payment whose reference is the STK CheckoutRequestID.
confirm_payment() settles it from the transaction callback: success moves
the order to processing; failure undoes the sale through the same
compensation path.

IDEMPOTENCY: the same idempotency_key always yields the first commit's
receipt. A key whose compensation failed is parked in needs_reconciliation
and refuses further commits until someone reconciles it by hand.

The caller owns the cart. commit() never mutates it; the checkout session
clears it after a successful return.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from ..models import Order
from ..models.orders import (
    ATTEMPT_COMMITTED,
    ATTEMPT_DEGRADED,
    ATTEMPT_FAILED,
    ATTEMPT_NEEDS_RECONCILIATION,
    ATTEMPT_PENDING,
    CHANNEL_ONLINE,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
)
from ..time_utils import to_utc_z, utcnow
from ..validation import (
    PAYMENT_CASH,
    PAYMENT_MPESA,
    ValidationError,
    normalize_payment_method,
    require_amount_cents,
)
from .cart_service import CartLine, CartSnapshot
from .discount_service import DiscountEvaluator, DiscountResult
from .ledger_store import AttemptConflict, InsufficientStock, LedgerStore, StockReservation, UsageCeilingReached
from .receipt_service import Receipt, ReceiptLine

logger = logging.getLogger(__name__)


class CommitPhase(str, enum.Enum):
    VALIDATING = "validating"
    RESERVING = "reserving"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    AWAITING_PAYMENT = "awaiting_payment"
    COMMITTED = "committed"


class CheckoutError(Exception):
    """Raised for checkout operation errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class CommitFailure(CheckoutError):
    """
    Commit did not complete.

    partial: some writes happened before the failure and were compensated.
    needs_reconciliation: compensation itself failed; details list what is
    left over (order id, unreleased reservations).
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        *,
        phase: CommitPhase | None = None,
        partial: bool = False,
        needs_reconciliation: bool = False,
    ):
        super().__init__(message, details)
        self.phase = phase
        self.partial = partial
        self.needs_reconciliation = needs_reconciliation


class CommitInProgress(CommitFailure):
    """Another commit with the same idempotency key has not finished yet."""


class CommitCancelled(CommitFailure):
    """Caller cancelled before any write was made."""


class PaymentDeclined(CheckoutError):
    """The payment provider reported the transaction as failed."""


def compute_tax_cents(subtotal_cents: int, vat_rate_bps: int) -> int:
    if not vat_rate_bps:
        return 0
    value = Decimal(subtotal_cents) * Decimal(vat_rate_bps) / Decimal(10_000)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PricedLine:
    """A cart line priced against the catalog and discounts at commit time."""
    product_id: int
    variant_id: int | None
    description: str
    quantity: int
    list_price_cents: int
    discount: DiscountResult | None = None

    @property
    def gross_cents(self) -> int:
        return self.list_price_cents * self.quantity

    @property
    def savings_cents(self) -> int:
        if self.discount is None:
            return 0
        return self.discount.line_savings_cents(self.quantity)

    @property
    def charged_cents(self) -> int:
        return self.gross_cents - self.savings_cents

    def receipt_lines(self) -> list[ReceiptLine]:
        """
        Order lines for this cart line.

        Buy-X-get-Y splits into a charged line and a free line so that each
        row satisfies unit_price == list_price - discount in whole cents.
        """
        base = dict(
            product_id=self.product_id,
            variant_id=self.variant_id,
            list_price_cents=self.list_price_cents,
        )
        discount = self.discount
        if discount is None or self.savings_cents == 0:
            return [ReceiptLine(
                description=self.description,
                quantity=self.quantity,
                discount_cents=0,
                unit_price_cents=self.list_price_cents,
                **base,
            )]

        if discount.free_units(self.quantity):
            free = discount.free_units(self.quantity)
            return [
                ReceiptLine(
                    description=self.description,
                    quantity=self.quantity - free,
                    discount_cents=0,
                    unit_price_cents=self.list_price_cents,
                    campaign_id=discount.campaign_id,
                    **base,
                ),
                ReceiptLine(
                    description=f"{self.description} (free)",
                    quantity=free,
                    discount_cents=self.list_price_cents,
                    unit_price_cents=0,
                    campaign_id=discount.campaign_id,
                    **base,
                ),
            ]

        return [ReceiptLine(
            description=self.description,
            quantity=self.quantity,
            discount_cents=discount.savings_cents,
            unit_price_cents=discount.final_price_cents,
            campaign_id=discount.campaign_id,
            **base,
        )]


@dataclass(frozen=True)
class PaymentTerms:
    method: str
    amount_cents: int
    tendered_cents: int | None = None
    change_cents: int = 0
    reference: str | None = None
    authorized_by: int | None = None


class CheckoutOrchestrator:
    def __init__(self, store: LedgerStore, evaluator: DiscountEvaluator | None = None, *, vat_rate_bps: int = 0):
        self.store = store
        self.evaluator = evaluator or DiscountEvaluator(store)
        self.vat_rate_bps = vat_rate_bps

    # =========================================================================
    # PUBLIC
    # =========================================================================

    def commit(
        self,
        snapshot: CartSnapshot,
        payment_method: str,
        tendered_cents: int | None = None,
        *,
        idempotency_key: str,
        customer_id: int | None = None,
        cashier_id: int | None = None,
        authorized_by: int | None = None,
        payment_reference: str | None = None,
        channel: str = "pos",
        cancel_event: threading.Event | None = None,
    ) -> Receipt:
        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationError("idempotency_key is required")

        replay = self._replay(key)
        if replay is not None:
            return replay

        # --- validating -----------------------------------------------------
        method = normalize_payment_method(payment_method)
        if snapshot.is_empty:
            raise ValidationError("Cart is empty")

        priced = [self._price_line(line, customer_id) for line in snapshot.lines]
        gross = sum(p.gross_cents for p in priced)
        discount_total = sum(p.savings_cents for p in priced)
        subtotal = gross - discount_total
        tax = compute_tax_cents(subtotal, self.vat_rate_bps)
        total = subtotal + tax

        terms = self._payment_terms(method, total, tendered_cents, authorized_by, payment_reference)

        if cancel_event is not None and cancel_event.is_set():
            raise CommitCancelled("Checkout cancelled", phase=CommitPhase.VALIDATING)

        try:
            self.store.claim_attempt(key)
        except AttemptConflict:
            replay = self._replay(key)
            if replay is not None:
                return replay
            raise CommitInProgress(
                "Checkout already in progress for this key",
                details={"idempotency_key": key},
                phase=CommitPhase.VALIDATING,
            )

        # Online M-Pesa orders wait for the transaction callback before they
        # are paid; everything else settles at the till.
        awaiting_payment = terms.method == PAYMENT_MPESA and channel == CHANNEL_ONLINE
        order_status = ORDER_PENDING if awaiting_payment else ORDER_COMPLETED
        payment_status = PAYMENT_PENDING if awaiting_payment else PAYMENT_COMPLETED

        # Stock and order events stay buffered until recording succeeds.
        with self.store.deferred_events():
            # --- reserving --------------------------------------------------
            self._set_phase(key, CommitPhase.RESERVING)
            reservations: list[StockReservation] = []
            try:
                for line in priced:
                    reservations.append(self.store.decrement_stock(line.product_id, line.quantity, line.variant_id))
            except InsufficientStock as exc:
                self._compensate(key, CommitPhase.RESERVING, reservations, None, exc)
                raise
            except Exception as exc:
                self._compensate(key, CommitPhase.RESERVING, reservations, None, exc)
                raise CommitFailure(
                    "Could not reserve stock",
                    details={"error": str(exc)},
                    phase=CommitPhase.RESERVING,
                    partial=bool(reservations),
                ) from exc

            # --- recording --------------------------------------------------
            self._set_phase(key, CommitPhase.RECORDING)
            receipt_lines = [rl for line in priced for rl in line.receipt_lines()]
            order_id = None
            payment_id = None
            try:
                receipt_number = self.store.next_receipt_number()
                order = self.store.create_order(
                    receipt_number=receipt_number,
                    idempotency_key=key,
                    customer_id=customer_id,
                    cashier_id=cashier_id,
                    channel=channel,
                    subtotal_cents=subtotal,
                    discount_cents=discount_total,
                    tax_cents=tax,
                    total_cents=total,
                    status=ORDER_PENDING if awaiting_payment else ORDER_PROCESSING,
                )
                order_id = order.id
                self.store.create_order_lines(order_id, [rl.to_dict() for rl in receipt_lines])
                payment = self.store.create_payment(
                    order_id=order_id,
                    method=terms.method,
                    amount_cents=terms.amount_cents,
                    tendered_cents=terms.tendered_cents,
                    change_cents=terms.change_cents,
                    reference=terms.reference,
                    authorized_by=terms.authorized_by,
                    status=payment_status,
                )
                payment_id = payment.id
                if not awaiting_payment:
                    self.store.update_order_status(order_id, ORDER_COMPLETED)
            except Exception as exc:
                self._compensate(key, CommitPhase.RECORDING, reservations, order_id, exc, payment_id=payment_id)
                raise CommitFailure(
                    "Could not record order",
                    details={"error": str(exc), "order_id": order_id},
                    phase=CommitPhase.RECORDING,
                    partial=True,
                ) from exc

        # --- finalizing -----------------------------------------------------
        self._set_phase(key, CommitPhase.FINALIZING)
        applied, warnings = self._record_usage(order_id, customer_id, priced)

        receipt = Receipt(
            receipt_number=receipt_number,
            order_id=order_id,
            idempotency_key=key,
            lines=tuple(receipt_lines),
            gross_cents=gross,
            discount_cents=discount_total,
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=total,
            payment_method=terms.method,
            tendered_cents=terms.tendered_cents,
            change_cents=terms.change_cents,
            payment_reference=terms.reference,
            customer_id=customer_id,
            cashier_id=cashier_id,
            applied_discounts=tuple(applied),
            issued_at=to_utc_z(utcnow()),
            order_status=order_status,
            payment_status=payment_status,
            degraded=bool(warnings),
            warnings=tuple(warnings),
        )

        try:
            self.store.update_attempt(
                key,
                status=ATTEMPT_DEGRADED if warnings else ATTEMPT_COMMITTED,
                phase=(CommitPhase.AWAITING_PAYMENT if awaiting_payment else CommitPhase.COMMITTED).value,
                order_id=order_id,
                receipt=receipt.to_dict(),
            )
        except Exception:
            logger.exception("Order %s committed but attempt %s could not be finalized", order_id, key)

        logger.info(
            "Committed order %s (%s) total=%s lines=%d degraded=%s",
            order_id, receipt_number, total, len(receipt_lines), receipt.degraded,
        )
        return receipt

    def confirm_payment(
        self,
        reference: str,
        succeeded: bool,
        *,
        result_code: str | None = None,
        result_desc: str | None = None,
    ) -> Order:
        """
        Apply an M-Pesa transaction result to a pending online order.

        Success moves the order pending -> processing. Failure undoes the
        sale: usage rows are removed, the order is cancelled and its stock
        released, and the idempotency key may be committed again. A
        redelivered result changes nothing and returns the order as is.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("reference is required")

        payment, changed = self.store.confirm_payment(
            reference, succeeded, result_code=result_code, result_desc=result_desc,
        )
        order = self.store.get_order(payment.order_id)
        if not changed:
            return order

        if succeeded:
            order = self.store.update_order_status(order.id, ORDER_PROCESSING)
            self._settle_receipt(
                order.idempotency_key, order_status=ORDER_PROCESSING, payment_status=PAYMENT_COMPLETED,
            )
            logger.info("M-Pesa payment %s confirmed for order %s", reference, order.id)
            return order

        logger.warning("M-Pesa payment %s failed for order %s: %s", reference, order.id, result_desc)
        cause = PaymentDeclined(
            result_desc or "M-Pesa payment failed",
            details={"reference": reference, "result_code": result_code},
        )
        self._compensate(
            order.idempotency_key,
            CommitPhase.AWAITING_PAYMENT,
            self._reservations_for(order),
            order.id,
            cause,
        )
        return self.store.get_order(order.id)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _replay(self, key: str) -> Receipt | None:
        attempt = self.store.get_attempt(key)
        if attempt is None or attempt.status == ATTEMPT_FAILED:
            return None
        if attempt.status in (ATTEMPT_COMMITTED, ATTEMPT_DEGRADED) and attempt.receipt:
            return Receipt.from_dict(attempt.receipt).as_replay()
        if attempt.status == ATTEMPT_NEEDS_RECONCILIATION:
            raise CommitFailure(
                "Previous attempt with this key needs manual reconciliation",
                details=dict(attempt.error or {}, idempotency_key=key),
                needs_reconciliation=True,
            )
        if attempt.status == ATTEMPT_PENDING:
            raise CommitInProgress(
                "Checkout already in progress for this key",
                details={"idempotency_key": key, "phase": attempt.phase},
            )
        return None

    def _price_line(self, line: CartLine, customer_id: int | None) -> PricedLine:
        product = self.store.get_product(line.product_id)
        if product is None or not product.is_active:
            raise ValidationError(
                "Product is no longer available",
                details={"product_id": line.product_id},
            )
        price = product.price_cents
        if line.variant_id is not None:
            variant = self.store.get_variant(line.variant_id)
            if variant is None or variant.product_id != product.id:
                raise ValidationError(
                    "Product variant is no longer available",
                    details={"product_id": line.product_id, "variant_id": line.variant_id},
                )
            price = variant.price_cents

        discount = self.evaluator.evaluate(line.product_id, line.quantity, customer_id, line.variant_id)
        return PricedLine(
            product_id=line.product_id,
            variant_id=line.variant_id,
            description=line.description,
            quantity=line.quantity,
            list_price_cents=price,
            discount=discount,
        )

    def _payment_terms(
        self,
        method: str,
        total_cents: int,
        tendered_cents,
        authorized_by: int | None,
        reference: str | None,
    ) -> PaymentTerms:
        reference = (reference or "").strip() or None

        if method == PAYMENT_CASH:
            if tendered_cents is None:
                raise ValidationError("tendered_cents is required for cash payments")
            tendered = require_amount_cents(tendered_cents, "tendered_cents")
            if tendered < total_cents:
                raise ValidationError(
                    "Amount tendered is less than total",
                    details={"tendered_cents": tendered, "total_cents": total_cents},
                )
            if authorized_by is None:
                raise ValidationError("Cash payments require an authorizing staff member")
            return PaymentTerms(
                method=method,
                amount_cents=total_cents,
                tendered_cents=tendered,
                change_cents=tendered - total_cents,
                reference=reference,
                authorized_by=authorized_by,
            )

        if method == PAYMENT_MPESA and not reference:
            raise ValidationError("M-Pesa payments require a transaction reference")

        return PaymentTerms(
            method=method,
            amount_cents=total_cents,
            reference=reference,
            authorized_by=authorized_by,
        )

    # =========================================================================
    # SIDE EFFECTS
    # =========================================================================

    def _reservations_for(self, order: Order) -> list[StockReservation]:
        """Stock taken by an order, one reservation per product/variant in line order."""
        taken: dict[tuple[int, int | None], int] = {}
        for line in order.lines:
            target = (line.product_id, line.variant_id)
            taken[target] = taken.get(target, 0) + line.quantity
        return [
            StockReservation(product_id=product_id, quantity=quantity, variant_id=variant_id)
            for (product_id, variant_id), quantity in taken.items()
        ]

    def _set_phase(self, key: str, phase: CommitPhase) -> None:
        try:
            self.store.update_attempt(key, phase=phase.value)
        except Exception:
            logger.warning("Could not record phase %s for attempt %s", phase.value, key, exc_info=True)

    def _record_usage(self, order_id: int, customer_id: int | None, priced: list[PricedLine]):
        applied: list[dict] = []
        warnings: list[str] = []
        for line in priced:
            discount = line.discount
            if discount is None or line.savings_cents <= 0:
                continue
            entry = {
                "campaign_id": discount.campaign_id,
                "rule_id": discount.rule_id,
                "kind": discount.kind,
                "campaign_name": discount.campaign_name,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "savings_cents": line.savings_cents,
            }
            applied.append(entry)
            try:
                self.store.record_discount_usage(
                    campaign_id=discount.campaign_id,
                    rule_id=discount.rule_id,
                    order_id=order_id,
                    customer_id=customer_id,
                    discount_cents=line.savings_cents,
                    quantity=line.quantity,
                    max_per_customer=discount.maximum_usage_per_customer,
                    max_total=discount.maximum_total_usage,
                )
            except UsageCeilingReached:
                logger.warning(
                    "Usage ceiling reached for campaign %s on order %s; discount already granted",
                    discount.campaign_id, order_id,
                )
                warnings.append(f"Usage limit reached for campaign {discount.campaign_id}; usage not recorded")
            except Exception:
                logger.warning(
                    "Could not record usage for campaign %s on order %s",
                    discount.campaign_id, order_id, exc_info=True,
                )
                warnings.append(f"Usage for campaign {discount.campaign_id} could not be recorded")
        return applied, warnings

    def _compensate(
        self,
        key: str,
        phase: CommitPhase,
        reservations: list[StockReservation],
        order_id: int | None,
        cause: Exception,
        *,
        payment_id: int | None = None,
    ) -> None:
        """
        Undo completed steps: void the payment, drop usage rows, cancel the
        order, then release stock in reverse order. Raises
        CommitFailure(needs_reconciliation) if any undo step fails.
        """
        leftovers: list[dict] = []
        payment_left_open = False
        usage_left_open = False
        order_left_open = False

        if payment_id is not None:
            try:
                self.store.update_payment_status(payment_id, PAYMENT_FAILED)
            except Exception:
                logger.exception("Could not void payment %s while compensating attempt %s", payment_id, key)
                payment_left_open = True

        if order_id is not None:
            try:
                self.store.delete_order_usage(order_id)
            except Exception:
                logger.exception("Could not remove usage for order %s while compensating attempt %s", order_id, key)
                usage_left_open = True
            try:
                self.store.update_order_status(order_id, ORDER_CANCELLED)
            except Exception:
                logger.exception("Could not cancel order %s while compensating attempt %s", order_id, key)
                order_left_open = True

        for reservation in reversed(reservations):
            try:
                self.store.release_stock(reservation)
            except Exception:
                logger.exception("Could not release %s while compensating attempt %s", reservation, key)
                leftovers.append(reservation.to_dict())

        error = {
            "phase": phase.value,
            "error": str(cause),
            "type": type(cause).__name__,
            "order_id": order_id,
        }
        if not (leftovers or payment_left_open or usage_left_open or order_left_open):
            self._finish(key, ATTEMPT_FAILED, order_id, error)
            return

        error.update({
            "unreleased": leftovers,
            "payment_id": payment_id,
            "payment_left_open": payment_left_open,
            "usage_left_open": usage_left_open,
            "order_left_open": order_left_open,
        })
        self._finish(key, ATTEMPT_NEEDS_RECONCILIATION, order_id, error)
        logger.error("Attempt %s needs manual reconciliation: %s", key, error)
        raise CommitFailure(
            "Commit failed and could not be fully undone",
            details=error,
            phase=phase,
            partial=True,
            needs_reconciliation=True,
        ) from cause

    def _finish(self, key: str, status: str, order_id: int | None, error: dict) -> None:
        try:
            self.store.finish_attempt(key, status, order_id=order_id, error=error)
        except Exception:
            logger.exception("Could not mark attempt %s as %s", key, status)

    def _settle_receipt(self, key: str, **statuses) -> None:
        """Keep the stored receipt in step with a confirmed payment so replays show it."""
        try:
            attempt = self.store.get_attempt(key)
            if attempt is None or not attempt.receipt:
                return
            self.store.update_attempt(key, phase=CommitPhase.COMMITTED.value, receipt=dict(attempt.receipt, **statuses))
        except Exception:
            logger.exception("Could not update stored receipt for attempt %s", key)
