# Overview: In-memory cart staging for one checkout session; no database work.

"""
Cart Store

WHY: The cashier builds a sale line by line before anything touches the
ledger. The cart only stages intent; stock is not reserved until commit.

INVARIANTS:
- Every line has quantity >= 1
- At most one line per (product_id, variant_id)
- A line's quantity never exceeds the stock seen when it was last changed
- snapshot() is immutable: later edits never alter a taken snapshot
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from ..time_utils import to_utc_z, utcnow
from ..validation import ConflictError, ValidationError, require_quantity


class CartStockLimitError(ConflictError):
    """Raised when an add would push a line beyond available stock."""

    def __init__(self, product_id: int, requested: int, available: int, variant_id: int | None = None):
        super().__init__(
            f"Only {available} in stock",
            details={
                "product_id": product_id,
                "variant_id": variant_id,
                "requested_quantity": requested,
                "available": available,
            },
        )
        self.requested = requested
        self.available = available


@dataclass(frozen=True)
class CartLine:
    """Staged product (and optional variant) with the price and stock seen at add time."""
    product_id: int
    name: str
    unit_price_cents: int
    quantity: int
    available_stock: int
    variant_id: int | None = None
    variant_label: str | None = None

    @property
    def key(self) -> tuple[int, int | None]:
        return (self.product_id, self.variant_id)

    @property
    def description(self) -> str:
        if self.variant_label:
            return f"{self.name} ({self.variant_label})"
        return self.name

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "name": self.name,
            "variant_label": self.variant_label,
            "description": self.description,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "available_stock": self.available_stock,
            "line_total_cents": self.line_total_cents,
        }


@dataclass(frozen=True)
class CartSnapshot:
    lines: tuple[CartLine, ...] = ()
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "total_cents": self.total_cents,
            "item_count": self.item_count,
            "taken_at": to_utc_z(self.taken_at),
        }


class CartStore:
    """
    Ordered collection of cart lines.

    Accepts Product / ProductVariant objects (anything with id, name,
    price_cents and stock) so it never needs to query the database itself.
    """

    def __init__(self) -> None:
        self._lines: list[CartLine] = []

    # -- reads ---------------------------------------------------------------

    @property
    def lines(self) -> tuple[CartLine, ...]:
        return tuple(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def total_cents(self) -> int:
        return sum(line.line_total_cents for line in self._lines)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    def find(self, product_id: int, variant_id: int | None = None) -> CartLine | None:
        for line in self._lines:
            if line.product_id == product_id and line.variant_id == variant_id:
                return line
        return None

    def snapshot(self) -> CartSnapshot:
        return CartSnapshot(lines=tuple(self._lines))

    # -- mutations -----------------------------------------------------------

    def add(self, product, quantity: int = 1, variant=None) -> CartLine:
        """
        Add quantity units of product (or of its variant), merging with an
        existing line.

        Raises ValidationError for quantity < 1 and CartStockLimitError when
        the merged quantity would exceed stock. The cart is unchanged on error.
        """
        quantity = require_quantity(quantity)
        if variant is not None and variant.product_id != product.id:
            raise ValidationError(
                "Variant does not belong to product",
                details={"product_id": product.id, "variant_id": variant.id},
            )

        variant_id = variant.id if variant is not None else None
        available = int(variant.stock if variant is not None else product.stock)
        price = int(variant.price_cents if variant is not None else product.price_cents)

        existing = self.find(product.id, variant_id)
        merged = quantity + (existing.quantity if existing else 0)
        if merged > available:
            raise CartStockLimitError(product.id, merged, available, variant_id=variant_id)

        if existing is not None:
            updated = replace(existing, quantity=merged, available_stock=available)
            self._replace(existing, updated)
            return updated

        line = CartLine(
            product_id=product.id,
            name=product.name,
            unit_price_cents=price,
            quantity=quantity,
            available_stock=available,
            variant_id=variant_id,
            variant_label=variant.label if variant is not None else None,
        )
        self._lines.append(line)
        return line

    def set_quantity(self, product_id: int, delta: int, variant_id: int | None = None) -> CartLine | None:
        """
        Change a line's quantity by delta.

        Out-of-range results (below 1 or above the line's stock) leave the
        line unchanged. Returns the resulting line, or None if no such line.
        """
        existing = self.find(product_id, variant_id)
        if existing is None:
            return None
        target = existing.quantity + delta
        if target < 1 or target > existing.available_stock:
            return existing
        updated = replace(existing, quantity=target)
        self._replace(existing, updated)
        return updated

    def remove(self, product_id: int, variant_id: int | None = None) -> bool:
        existing = self.find(product_id, variant_id)
        if existing is None:
            return False
        self._lines.remove(existing)
        return True

    def clear(self) -> None:
        self._lines.clear()

    def _replace(self, old: CartLine, new: CartLine) -> None:
        idx = self._lines.index(old)
        self._lines[idx] = new

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self._lines],
            "total_cents": self.total_cents,
            "item_count": self.item_count,
        }
