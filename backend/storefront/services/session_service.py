# Overview: Service-layer checkout sessions; one cart plus customer and cashier context per terminal.

"""
Checkout Session Management

WHY: Each terminal (or web shopper) stages its own cart. A session bundles
the cart with who is buying and who is ringing the sale up, and is the only
place that clears the cart after a successful commit.

Sessions live in process memory. They hold no database state; a restart
simply empties every cart, the same as closing the browser tab.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime

from ..models.orders import CHANNEL_ONLINE, CHANNEL_POS
from ..time_utils import to_utc_z, utcnow
from ..validation import ValidationError
from .cart_service import CartLine, CartStore
from .checkout_service import CheckoutOrchestrator
from .discount_service import DiscountEvaluator, DiscountResult
from .ledger_store import LedgerStore
from .receipt_service import Receipt


class SessionNotFound(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"Checkout session {session_id} not found")
        self.details = {"session_id": session_id}


@dataclass
class CheckoutSession:
    id: str
    customer_id: int | None = None
    cashier_id: int | None = None
    channel: str = CHANNEL_POS
    cart: CartStore = field(default_factory=CartStore)
    created_at: datetime = field(default_factory=utcnow)
    last_receipt: Receipt | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "cashier_id": self.cashier_id,
            "channel": self.channel,
            "cart": self.cart.to_dict(),
            "created_at": to_utc_z(self.created_at),
            "last_receipt_number": self.last_receipt.receipt_number if self.last_receipt else None,
        }


class CheckoutSessionRegistry:
    """Creates and looks up sessions, and runs cart operations against the store."""

    def __init__(self, store: LedgerStore, evaluator: DiscountEvaluator, orchestrator: CheckoutOrchestrator):
        self.store = store
        self.evaluator = evaluator
        self.orchestrator = orchestrator
        self._sessions: dict[str, CheckoutSession] = {}
        self._lock = threading.Lock()

    def create(self, customer_id: int | None = None, cashier_id: int | None = None, channel: str = CHANNEL_POS) -> CheckoutSession:
        if channel not in (CHANNEL_POS, CHANNEL_ONLINE):
            raise ValidationError("channel must be 'pos' or 'online'", details={"channel": channel})
        session = CheckoutSession(
            id=secrets.token_hex(8),
            customer_id=customer_id,
            cashier_id=cashier_id,
            channel=channel,
        )
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> CheckoutSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # -- cart ----------------------------------------------------------------

    def add_item(self, session_id: str, product_id: int, quantity: int = 1, variant_id: int | None = None) -> CartLine:
        session = self.get(session_id)
        product = self.store.get_product(product_id)
        if product is None or not product.is_active:
            raise ValidationError("Product not found", details={"product_id": product_id})
        variant = None
        if variant_id is not None:
            variant = self.store.get_variant(variant_id)
            if variant is None:
                raise ValidationError("Variant not found", details={"variant_id": variant_id})
        with session.lock:
            return session.cart.add(product, quantity, variant)

    def change_quantity(self, session_id: str, product_id: int, delta: int, variant_id: int | None = None) -> CartLine | None:
        session = self.get(session_id)
        with session.lock:
            return session.cart.set_quantity(product_id, delta, variant_id)

    def remove_item(self, session_id: str, product_id: int, variant_id: int | None = None) -> bool:
        session = self.get(session_id)
        with session.lock:
            return session.cart.remove(product_id, variant_id)

    def clear(self, session_id: str) -> None:
        session = self.get(session_id)
        with session.lock:
            session.cart.clear()

    def evaluate_discounts(self, session_id: str) -> list[tuple[CartLine, DiscountResult | None]]:
        session = self.get(session_id)
        with session.lock:
            snapshot = session.cart.snapshot()
        return self.evaluator.evaluate_cart(snapshot, session.customer_id)

    # -- commit --------------------------------------------------------------

    def commit(self, session_id: str, payment_method: str, tendered_cents=None, **kwargs) -> Receipt:
        """
        Commit the session's cart. The cart is cleared only when the commit
        succeeded and was not a replay; any raised error leaves it intact.
        """
        session = self.get(session_id)
        with session.lock:
            snapshot = session.cart.snapshot()
            kwargs.setdefault("customer_id", session.customer_id)
            kwargs.setdefault("cashier_id", session.cashier_id)
            kwargs.setdefault("channel", session.channel)
            receipt = self.orchestrator.commit(snapshot, payment_method, tendered_cents, **kwargs)
            if not receipt.replayed:
                session.cart.clear()
            session.last_receipt = receipt
            return receipt
