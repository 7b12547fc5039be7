from __future__ import annotations

from typing import Any


# Maximum price: 9,999,999.99 in major units (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

PAYMENT_CASH = "cash"
PAYMENT_MPESA = "mpesa"
PAYMENT_CARD = "card"

VALID_PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_MPESA, PAYMENT_CARD)


class ValidationError(ValueError):
    """400-level input problem. Raised before any write happens."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., stock limit reached)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON/query input.

    Rejects floats, booleans, decimal strings and scientific notation so that
    quantities and cent amounts are never silently truncated.
    """
    if value is None:
        raise ValidationError(f"{field} is required")

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")

    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")

    raise ValidationError(f"{field} must be an integer")


def coerce_optional_int(value: Any, field: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return coerce_int(value, field)


def require_quantity(value: Any, field: str = "quantity") -> int:
    qty = coerce_int(value, field)
    if qty < 1:
        raise ValidationError(f"{field} must be at least 1", details={field: qty})
    return qty


def require_amount_cents(value: Any, field: str) -> int:
    amount = coerce_int(value, field)
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_PRICE_CENTS * 100:
        raise ValidationError(f"{field} is out of range")
    return amount


def normalize_payment_method(value: Any) -> str:
    method = str(value or "").strip().lower()
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method: {value!r}. Must be one of {list(VALID_PAYMENT_METHODS)}",
            details={"payment_method": value},
        )
    return method
