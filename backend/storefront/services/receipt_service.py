# Overview: Receipt value objects produced by checkout commit, plus plain-text rendering for printing.

from __future__ import annotations

from dataclasses import dataclass, replace


def format_cents(amount_cents: int, currency: str = "KES") -> str:
    sign = "-" if amount_cents < 0 else ""
    major, minor = divmod(abs(int(amount_cents)), 100)
    return f"{sign}{currency} {major:,}.{minor:02d}"


@dataclass(frozen=True)
class ReceiptLine:
    product_id: int
    description: str
    quantity: int
    list_price_cents: int
    discount_cents: int
    unit_price_cents: int
    variant_id: int | None = None
    campaign_id: int | None = None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "description": self.description,
            "quantity": self.quantity,
            "list_price_cents": self.list_price_cents,
            "discount_cents": self.discount_cents,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "campaign_id": self.campaign_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReceiptLine":
        return cls(
            product_id=data["product_id"],
            variant_id=data.get("variant_id"),
            description=data["description"],
            quantity=data["quantity"],
            list_price_cents=data["list_price_cents"],
            discount_cents=data.get("discount_cents", 0),
            unit_price_cents=data["unit_price_cents"],
            campaign_id=data.get("campaign_id"),
        )


@dataclass(frozen=True)
class Receipt:
    """
    Outcome of a successful commit.

    Stored verbatim on the checkout attempt so a replayed idempotency key
    returns exactly what the first commit returned (with replayed=True).

    gross_cents is the list-price total; subtotal_cents is what the lines
    were charged (gross minus discounts); total_cents adds tax.
    """
    receipt_number: str
    order_id: int
    idempotency_key: str
    lines: tuple[ReceiptLine, ...]
    gross_cents: int
    discount_cents: int
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    payment_method: str
    issued_at: str
    tendered_cents: int | None = None
    change_cents: int = 0
    payment_reference: str | None = None
    customer_id: int | None = None
    cashier_id: int | None = None
    applied_discounts: tuple[dict, ...] = ()
    order_status: str = "completed"
    payment_status: str = "completed"
    degraded: bool = False
    warnings: tuple[str, ...] = ()
    replayed: bool = False

    def as_replay(self) -> "Receipt":
        return replace(self, replayed=True)

    def to_dict(self) -> dict:
        return {
            "receipt_number": self.receipt_number,
            "order_id": self.order_id,
            "idempotency_key": self.idempotency_key,
            "lines": [line.to_dict() for line in self.lines],
            "gross_cents": self.gross_cents,
            "discount_cents": self.discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "tendered_cents": self.tendered_cents,
            "change_cents": self.change_cents,
            "payment_reference": self.payment_reference,
            "customer_id": self.customer_id,
            "cashier_id": self.cashier_id,
            "applied_discounts": [dict(d) for d in self.applied_discounts],
            "issued_at": self.issued_at,
            "order_status": self.order_status,
            "payment_status": self.payment_status,
            "degraded": self.degraded,
            "warnings": list(self.warnings),
            "replayed": self.replayed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Receipt":
        return cls(
            receipt_number=data["receipt_number"],
            order_id=data["order_id"],
            idempotency_key=data["idempotency_key"],
            lines=tuple(ReceiptLine.from_dict(line) for line in data.get("lines", [])),
            gross_cents=data["gross_cents"],
            discount_cents=data["discount_cents"],
            subtotal_cents=data["subtotal_cents"],
            tax_cents=data["tax_cents"],
            total_cents=data["total_cents"],
            payment_method=data["payment_method"],
            issued_at=data["issued_at"],
            tendered_cents=data.get("tendered_cents"),
            change_cents=data.get("change_cents", 0),
            payment_reference=data.get("payment_reference"),
            customer_id=data.get("customer_id"),
            cashier_id=data.get("cashier_id"),
            applied_discounts=tuple(data.get("applied_discounts", [])),
            order_status=data.get("order_status", "completed"),
            payment_status=data.get("payment_status", "completed"),
            degraded=bool(data.get("degraded", False)),
            warnings=tuple(data.get("warnings", [])),
            replayed=bool(data.get("replayed", False)),
        )


def format_receipt(receipt: Receipt, currency: str = "KES", store_name: str = "STOREFRONT", width: int = 40) -> str:
    """Render a fixed-width plain-text receipt for a thermal printer."""
    rule = "-" * width

    def row(left: str, right: str) -> str:
        gap = max(1, width - len(left) - len(right))
        return f"{left}{' ' * gap}{right}"

    out = [store_name.center(width), "Sales Receipt".center(width), rule]
    out.append(row("Receipt #:", receipt.receipt_number))
    out.append(row("Date:", receipt.issued_at))
    if receipt.cashier_id is not None:
        out.append(row("Cashier:", str(receipt.cashier_id)))
    out.append(row("Payment:", receipt.payment_method.upper()))
    if receipt.payment_reference:
        out.append(row("Reference:", receipt.payment_reference))
    if receipt.payment_status != "completed":
        out.append(row("Payment status:", receipt.payment_status.upper()))
    out.append(rule)

    for line in receipt.lines:
        out.append(line.description[:width])
        out.append(row(
            f"  {line.quantity} x {format_cents(line.unit_price_cents, currency)}",
            format_cents(line.line_total_cents, currency),
        ))
        if line.discount_cents:
            out.append(f"  was {format_cents(line.list_price_cents, currency)}, "
                       f"save {format_cents(line.discount_cents, currency)} each")
    out.append(rule)

    out.append(row("Subtotal:", format_cents(receipt.gross_cents, currency)))
    if receipt.discount_cents:
        out.append(row("Discount:", format_cents(-receipt.discount_cents, currency)))
    if receipt.tax_cents:
        out.append(row("VAT:", format_cents(receipt.tax_cents, currency)))
    out.append(row("TOTAL:", format_cents(receipt.total_cents, currency)))
    if receipt.tendered_cents is not None:
        out.append(row("Tendered:", format_cents(receipt.tendered_cents, currency)))
        out.append(row("Change:", format_cents(receipt.change_cents, currency)))
    out.append(rule)
    out.append("Thank you for shopping with us!".center(width))
    return "\n".join(out)
