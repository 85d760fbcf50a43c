from decimal import Decimal

import pytest

from buildledger.errors import ValidationError
from buildledger.money import compute_totals, from_cents, line_total, to_cents, to_decimal


def test_totals_for_kitchen_invoice():
    items = [{"quantity": 1, "unit_price": 2400}, {"quantity": 5, "unit_price": 120}]
    totals = compute_totals(items, 8.5)
    assert totals.subtotal == Decimal("3000.00")
    assert totals.tax_amount == Decimal("255.00")
    assert totals.total == Decimal("3255.00")


def test_recomputation_is_identical():
    items = [{"quantity": "2.5", "unit_price": "19.99"}, {"quantity": 3, "unit_price": 0.1}]
    first = compute_totals(items, "7.25")
    second = compute_totals(items, "7.25")
    assert first == second
    assert str(first.total) == str(second.total)


def test_float_inputs_do_not_drift():
    items = [{"quantity": 3, "unit_price": 0.1}]
    totals = compute_totals(items, 0)
    assert totals.subtotal == Decimal("0.30")


def test_tax_rounds_half_up_on_the_aggregate():
    # Per line: 3 x round(0.005) = 0.03.  Aggregate: round(0.30 * 5%) = 0.02.
    items = [{"quantity": 1, "unit_price": "0.10"}] * 3
    totals = compute_totals(items, 5)
    assert totals.tax_amount == Decimal("0.02")
    assert totals.subtotal + totals.tax_amount == totals.total


def test_empty_item_set_is_zero():
    totals = compute_totals([], 10)
    assert totals == (Decimal("0.00"), Decimal("0.00"), Decimal("0.00"))


@pytest.mark.parametrize(
    "items, rate",
    [
        ([{"quantity": -1, "unit_price": 10}], 0),
        ([{"quantity": 1, "unit_price": -10}], 0),
        ([{"quantity": 1, "unit_price": 10}], 101),
        ([{"quantity": 1, "unit_price": 10}], -0.5),
        ([{"quantity": "lots", "unit_price": 10}], 0),
    ],
)
def test_invalid_inputs_rejected(items, rate):
    with pytest.raises(ValidationError):
        compute_totals(items, rate)


def test_to_decimal_rejects_booleans_and_nan():
    with pytest.raises(ValidationError):
        to_decimal(True)
    with pytest.raises(ValidationError):
        to_decimal("NaN")


def test_cents_conversion():
    assert to_cents(Decimal("3255.00")) == 325500
    assert from_cents(325500) == Decimal("3255.00")
    assert from_cents(199) == Decimal("1.99")


def test_subtotal_is_sum_of_rounded_lines():
    # 0.495 rounds to 0.50 on each line; rounding the raw sum would give 1.49.
    items = [{"quantity": "1.5", "unit_price": "0.33"}] * 3
    totals = compute_totals(items, 0)
    assert totals.subtotal == sum(line_total(i["quantity"], i["unit_price"]) for i in items) == Decimal("1.50")


def test_precision_finer_than_storage_is_rejected():
    with pytest.raises(ValidationError, match="at most 2 decimal places"):
        compute_totals([{"quantity": 1, "unit_price": "0.333"}], 0)
    with pytest.raises(ValidationError, match="at most 2 decimal places"):
        compute_totals([], "8.125")
    # Trailing zeros are not extra precision.
    assert compute_totals([{"quantity": "2.000", "unit_price": "1.500"}], "5.00").total == Decimal("3.15")
