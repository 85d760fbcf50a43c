"""
Money and line-item arithmetic.

All amounts are ``Decimal``.  Inputs are converted through ``str`` so floats
coming from JSON never leak binary rounding into totals.  Quantities, unit
prices and tax rates must already fit the precision they are stored with, so
totals computed here are the totals a later recompute from the stored row
produces.  Each line is rounded half-up to cents, the subtotal is the sum of
those lines, and tax is rounded once on the subtotal.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, NamedTuple

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal(100)

# Scales of the quantity, unit_price and tax_rate columns.
QUANTITY_STEP = Decimal("0.001")
PRICE_STEP = CENT
RATE_STEP = CENT


class Totals(NamedTuple):
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} must be a number") from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def check_scale(value: Decimal, step: Decimal, field: str) -> Decimal:
    """Reject ``value`` if it carries more decimal places than ``step``."""
    try:
        fitted = value.quantize(step)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large") from None
    if fitted != value:
        places = -step.as_tuple().exponent
        raise ValidationError(f"{field} allows at most {places} decimal places")
    return fitted


def to_cents(amount: Decimal) -> int:
    """Convert a decimal amount to integer minor units for the processor."""
    return int(quantize(amount) * 100)


def from_cents(cents: Any) -> Decimal:
    return quantize(to_decimal(cents, "amount") / HUNDRED)


def validate_quantity(quantity: Any) -> Decimal:
    quantity = check_scale(to_decimal(quantity, "quantity"), QUANTITY_STEP, "quantity")
    if quantity <= 0:
        raise ValidationError("quantity must be positive")
    return quantity


def validate_unit_price(unit_price: Any) -> Decimal:
    unit_price = check_scale(to_decimal(unit_price, "unit_price"), PRICE_STEP, "unit_price")
    if unit_price < 0:
        raise ValidationError("unit_price must not be negative")
    return unit_price


def line_total(quantity: Any, unit_price: Any) -> Decimal:
    """Line amount rounded half-up to cents, as stored on the item row."""
    return quantize(validate_quantity(quantity) * validate_unit_price(unit_price))


def validate_tax_rate(tax_rate: Any) -> Decimal:
    rate = check_scale(to_decimal(tax_rate, "tax_rate"), RATE_STEP, "tax_rate")
    if rate < 0 or rate > HUNDRED:
        raise ValidationError("tax_rate must be between 0 and 100")
    return rate


def compute_totals(items: Iterable[Mapping[str, Any]], tax_rate: Any) -> Totals:
    """Return subtotal, tax and total for a set of line items.

    Parameters
    ----------
    items : iterable of mappings
        Each with ``quantity`` and ``unit_price``.
    tax_rate : number
        Percentage in [0, 100].

    Raises
    ------
    ValidationError
        For a non-positive quantity, a negative unit price, a tax rate out
        of range, or any of them finer than its stored precision.
    """
    rate = validate_tax_rate(tax_rate)
    subtotal = sum((line_total(i.get("quantity"), i.get("unit_price")) for i in items), ZERO)
    tax_amount = quantize(subtotal * rate / HUNDRED)
    return Totals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)
