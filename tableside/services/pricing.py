"""
Order Pricing

Deterministic money math for new orders. Everything is computed from the
price snapshots on the order lines, the restaurant tax rate (a percentage)
and a small fixed promo-code table, so the same cart always prices the same.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from tableside.core.exceptions import ValidationError


# code -> (kind, value); "percent" values are percentages of the subtotal
PROMO_CODES: dict[str, tuple[str, float]] = {
    "WELCOME10": ("percent", 10.0),
    "FEAST15": ("percent", 15.0),
    "FLAT5": ("flat", 5.0),
}


@dataclass
class OrderTotals:
    """Computed amounts for one order, all rounded to cents."""
    subtotal: float
    tax: float
    tip: float
    discount: float
    total: float
    promo_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "tip": self.tip,
            "discount": self.discount,
            "total": self.total,
            "promo_code": self.promo_code,
        }


def compute_subtotal(items: Iterable[dict]) -> float:
    """Sum of price x quantity over order line snapshots."""
    return round(sum(item["price"] * item["quantity"] for item in items), 2)


def compute_total(subtotal: float, tax: float, tip: float, discount: float) -> float:
    """total = max(0, subtotal + tax + tip - discount)"""
    return round(max(0.0, subtotal + tax + tip - discount), 2)


def compute_discount(subtotal: float, promo_code: Optional[str]) -> tuple[float, Optional[str]]:
    """
    Resolve a promo code against the fixed table.

    Returns:
        (discount amount, normalized code or None)

    Raises:
        ValidationError: If the code is not recognised
    """
    if not promo_code or not promo_code.strip():
        return 0.0, None

    code = promo_code.strip().upper()
    if code not in PROMO_CODES:
        raise ValidationError(f"Promo code {promo_code!r} is not valid")

    kind, value = PROMO_CODES[code]
    if kind == "percent":
        discount = subtotal * value / 100
    else:
        discount = value

    return round(min(discount, subtotal), 2), code


def calculate_order_totals(
    items: list[dict],
    tax_rate: float,
    tip: float = 0.0,
    promo_code: Optional[str] = None,
) -> OrderTotals:
    """
    Calculate order subtotal, tax, discount and total.

    Args:
        items: Line snapshots with ``price`` and ``quantity``
        tax_rate: Restaurant tax rate in percent (8.5 means 8.5%)
        tip: Customer tip, must be non-negative
        promo_code: Optional code from PROMO_CODES
    """
    if tip is None:
        tip = 0.0
    if tip < 0:
        raise ValidationError("Tip cannot be negative")
    if tax_rate < 0:
        raise ValidationError("Tax rate cannot be negative")

    subtotal = compute_subtotal(items)
    tax = round(subtotal * tax_rate / 100, 2)
    tip = round(tip, 2)
    discount, code = compute_discount(subtotal, promo_code)

    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        tip=tip,
        discount=discount,
        total=compute_total(subtotal, tax, tip, discount),
        promo_code=code,
    )
