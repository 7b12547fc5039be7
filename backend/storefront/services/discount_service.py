# Overview: Service-layer discount evaluation; picks one campaign rule per cart line and prices it.

"""
Discount Evaluator

WHY: Cart display and checkout commit must agree on what a line costs. Both
go through evaluate(), which reads candidates from the ledger store, picks
exactly one, and returns the per-unit effect in integer cents.

SELECTION: when several rules match, the one whose campaign ends soonest
wins; ties fall to the lower campaign id, then the lower rule id.

KINDS (per unit, cents, rounding half-up):
- percentage:   final = price * (1 - value/100)
- fixed_amount: final = max(0, price - value)
- buy_x_get_y:  no per-unit change; free_units(q) = (q // (buy + get)) * get
- bundle:       priced like percentage

USAGE CEILINGS: the Usage Guard is asked whenever a customer is known, and
for guests when the rule has a total ceiling. A refusal means "no discount",
never an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from ..models.discounts import KIND_BUNDLE, KIND_BUY_X_GET_Y, KIND_FIXED_AMOUNT, KIND_PERCENTAGE
from ..time_utils import to_utc_z
from .cart_service import CartLine, CartSnapshot
from .ledger_store import DiscountCandidate, LedgerStore
from .usage_guard import UsageGuard


def percent_of_cents(amount_cents: int, percent: int) -> int:
    """amount * percent / 100, rounded half-up to the cent."""
    value = Decimal(amount_cents) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class DiscountResult:
    campaign_id: int
    rule_id: int | None
    kind: str
    campaign_name: str
    original_price_cents: int
    final_price_cents: int
    savings_cents: int
    end_date: datetime | None = None
    buy_quantity: int | None = None
    get_quantity: int | None = None
    maximum_usage_per_customer: int | None = None
    maximum_total_usage: int | None = None

    def free_units(self, quantity: int) -> int:
        if self.kind != KIND_BUY_X_GET_Y or not self.buy_quantity or not self.get_quantity:
            return 0
        return (quantity // (self.buy_quantity + self.get_quantity)) * self.get_quantity

    def line_savings_cents(self, quantity: int) -> int:
        """Total monetary effect of this discount on a line of `quantity` units."""
        if self.kind == KIND_BUY_X_GET_Y:
            return self.free_units(quantity) * self.original_price_cents
        return self.savings_cents * quantity

    def line_total_cents(self, quantity: int) -> int:
        return self.original_price_cents * quantity - self.line_savings_cents(quantity)

    def to_dict(self, quantity: int | None = None) -> dict:
        data = {
            "campaign_id": self.campaign_id,
            "rule_id": self.rule_id,
            "kind": self.kind,
            "campaign_name": self.campaign_name,
            "original_price_cents": self.original_price_cents,
            "final_price_cents": self.final_price_cents,
            "savings_cents": self.savings_cents,
            "buy_quantity": self.buy_quantity,
            "get_quantity": self.get_quantity,
            "end_date": to_utc_z(self.end_date),
        }
        if quantity is not None:
            data["quantity"] = quantity
            data["free_units"] = self.free_units(quantity)
            data["line_savings_cents"] = self.line_savings_cents(quantity)
        return data


def _selection_key(candidate: DiscountCandidate):
    return (candidate.end_date, candidate.campaign_id, candidate.rule_id or 0)


class DiscountEvaluator:
    def __init__(self, store: LedgerStore, guard: UsageGuard | None = None):
        self.store = store
        self.guard = guard or UsageGuard(store)

    def evaluate(
        self,
        product_id: int,
        quantity: int,
        customer_id: int | None = None,
        variant_id: int | None = None,
        now: datetime | None = None,
    ) -> DiscountResult | None:
        """Best applicable discount for quantity units of product_id, or None."""
        if quantity is None or quantity <= 0:
            return None

        product = self.store.get_product(product_id)
        if product is None:
            return None
        price = product.price_cents
        if variant_id is not None:
            variant = self.store.get_variant(variant_id)
            if variant is None or variant.product_id != product_id:
                return None
            price = variant.price_cents
        if price is None or price <= 0:
            return None

        candidates = self.store.query_active_discount(product_id, quantity, now=now)
        if not candidates:
            return None
        chosen = min(candidates, key=_selection_key)

        if self._needs_usage_check(chosen, customer_id):
            allowed = self.guard.is_usage_allowed(
                chosen.campaign_id,
                customer_id,
                max_per_customer=chosen.maximum_usage_per_customer,
                max_total=chosen.maximum_total_usage,
            )
            if not allowed:
                return None

        return self._price(chosen, price)

    def evaluate_cart(
        self,
        snapshot: CartSnapshot,
        customer_id: int | None = None,
        now: datetime | None = None,
    ) -> list[tuple[CartLine, DiscountResult | None]]:
        return [
            (line, self.evaluate(line.product_id, line.quantity, customer_id, line.variant_id, now=now))
            for line in snapshot.lines
        ]

    def _needs_usage_check(self, candidate: DiscountCandidate, customer_id: int | None) -> bool:
        if customer_id is not None:
            return (
                candidate.maximum_usage_per_customer is not None
                or candidate.maximum_total_usage is not None
            )
        return candidate.maximum_total_usage is not None

    def _price(self, candidate: DiscountCandidate, price_cents: int) -> DiscountResult | None:
        kind = candidate.kind
        value = candidate.discount_value or 0

        if kind in (KIND_PERCENTAGE, KIND_BUNDLE):
            percent = min(max(value, 0), 100)
            final = price_cents - percent_of_cents(price_cents, percent)
        elif kind == KIND_FIXED_AMOUNT:
            final = max(0, price_cents - max(value, 0))
        elif kind == KIND_BUY_X_GET_Y:
            if not candidate.buy_quantity or not candidate.get_quantity:
                return None
            if candidate.buy_quantity < 1 or candidate.get_quantity < 1:
                return None
            final = price_cents
        else:
            return None

        return DiscountResult(
            campaign_id=candidate.campaign_id,
            rule_id=candidate.rule_id,
            kind=kind,
            campaign_name=candidate.campaign_name,
            original_price_cents=price_cents,
            final_price_cents=final,
            savings_cents=price_cents - final,
            end_date=candidate.end_date,
            buy_quantity=candidate.buy_quantity,
            get_quantity=candidate.get_quantity,
            maximum_usage_per_customer=candidate.maximum_usage_per_customer,
            maximum_total_usage=candidate.maximum_total_usage,
        )
