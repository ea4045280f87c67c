"""
Unit tests for poflow/services/tax_service.py

Tests: calculate_tax in each mode, rounding, the subtotal + tax == total
identity over varied inputs, empty input, format_currency.
"""

import random
from decimal import Decimal

import pytest

from poflow.services.tax_service import (
    calculate_tax,
    format_currency,
    line_total,
    quantize_money,
)


def _lines(*pairs):
    return [{"quantity": q, "unit_price": p} for q, p in pairs]


def test_exclusive_adds_tax_on_top():
    calc = calculate_tax(_lines((2, "50.00")), "EXCLUSIVE", Decimal("20"))

    assert calc.subtotal_amount == Decimal("100.00")
    assert calc.tax_amount == Decimal("20.00")
    assert calc.total_amount == Decimal("120.00")


def test_inclusive_extracts_tax_from_total():
    calc = calculate_tax(_lines((1, "120.00")), "INCLUSIVE", Decimal("20"))

    assert calc.subtotal_amount == Decimal("100.00")
    assert calc.tax_amount == Decimal("20.00")
    assert calc.total_amount == Decimal("120.00")


def test_inclusive_rounds_each_figure_half_up():
    # 100 / 1.175 = 85.106..., tax = 14.893...
    calc = calculate_tax(_lines((1, "100.00")), "INCLUSIVE", Decimal("17.5"))

    assert calc.subtotal_amount == Decimal("85.11")
    assert calc.tax_amount == Decimal("14.89")
    assert calc.total_amount == Decimal("100.00")


def test_none_mode_ignores_rate():
    calc = calculate_tax(_lines((3, "10.00")), "NONE", Decimal("20"))

    assert calc.subtotal_amount == Decimal("30.00")
    assert calc.tax_amount == Decimal("0.00")
    assert calc.total_amount == Decimal("30.00")


def test_unknown_mode_behaves_like_none():
    calc = calculate_tax(_lines((1, "10.00")), "SOMETHING", Decimal("20"))

    assert calc.tax_amount == Decimal("0.00")
    assert calc.total_amount == Decimal("10.00")


def test_empty_line_items_give_zeros():
    calc = calculate_tax([], "EXCLUSIVE", Decimal("20"))

    assert calc.as_dict() == {
        "subtotal_amount": Decimal("0.00"),
        "tax_amount": Decimal("0.00"),
        "total_amount": Decimal("0.00"),
    }


def test_zero_rate_exclusive_equals_subtotal():
    calc = calculate_tax(_lines((1, "99.99")), "EXCLUSIVE", 0)

    assert calc.tax_amount == Decimal("0.00")
    assert calc.total_amount == Decimal("99.99")


def test_rounding_is_half_up_not_bankers():
    # 0.25 * 10% = 0.025, exactly half a penny
    calc = calculate_tax(_lines((1, "0.25")), "EXCLUSIVE", Decimal("10"))

    assert calc.tax_amount == Decimal("0.03")  # 0.025 -> 0.03
    assert quantize_money(Decimal("2.345")) == Decimal("2.35")
    assert quantize_money(Decimal("-2.345")) == Decimal("-2.35")


def test_float_inputs_are_converted_exactly():
    calc = calculate_tax(_lines((3, 0.1)), "NONE", None)

    assert calc.subtotal_amount == Decimal("0.30")


def test_accepts_objects_with_attributes():
    class Line:
        def __init__(self, quantity, unit_price):
            self.quantity = quantity
            self.unit_price = unit_price

    calc = calculate_tax([Line(Decimal("1.5"), Decimal("10.00"))], "EXCLUSIVE", Decimal("20"))

    assert calc.subtotal_amount == Decimal("15.00")
    assert calc.total_amount == Decimal("18.00")


def test_line_total_rounds_to_pennies():
    assert line_total(Decimal("0.333"), Decimal("10.00")) == Decimal("3.33")


@pytest.mark.parametrize(
    "amount, currency, expected",
    [
        (Decimal("1234.5"), "GBP", "£1,234.50"),
        (Decimal("0"), "USD", "$0.00"),
        (Decimal("1000000"), "EUR", "€1,000,000.00"),
        (Decimal("-12.3"), "GBP", "-£12.30"),
        (Decimal("1"), "XYZ", "1.00 XYZ"),
    ],
)
def test_format_currency(amount, currency, expected):
    assert format_currency(amount, currency) == expected


def _varied_line_sets(count=300, seed=20240611):
    rng = random.Random(seed)
    for _ in range(count):
        lines = [
            {
                "quantity": Decimal(rng.randint(1, 50_000)) / 1000,
                "unit_price": Decimal(rng.randint(0, 500_000)) / 100,
            }
            for _ in range(rng.randint(1, 6))
        ]
        rate = Decimal(rng.randint(0, 10_000)) / 100
        yield lines, rate


def test_exclusive_fractional_quantity_sums_exactly():
    # 1.5 * 0.33 = 0.495: the subtotal is rounded before tax is applied
    calc = calculate_tax(_lines((Decimal("1.5"), Decimal("0.33"))), "EXCLUSIVE", Decimal("10"))

    assert calc.subtotal_amount == Decimal("0.50")
    assert calc.tax_amount == Decimal("0.05")
    assert calc.total_amount == Decimal("0.55")


def test_exclusive_identity_holds_for_varied_inputs():
    for lines, rate in _varied_line_sets():
        calc = calculate_tax(lines, "EXCLUSIVE", rate)

        assert calc.total_amount == calc.subtotal_amount + calc.tax_amount
        assert calc.tax_amount == quantize_money(calc.subtotal_amount * rate / 100)
        assert calc.subtotal_amount == quantize_money(
            sum(li["quantity"] * li["unit_price"] for li in lines)
        )


def test_inclusive_identity_holds_for_varied_inputs():
    for lines, rate in _varied_line_sets():
        calc = calculate_tax(lines, "INCLUSIVE", rate)

        assert calc.total_amount == calc.subtotal_amount + calc.tax_amount
        assert calc.total_amount == quantize_money(
            sum(li["quantity"] * li["unit_price"] for li in lines)
        )
        # Re-applying the rate to the rounded subtotal lands within a penny or so
        regrossed = calc.subtotal_amount * (1 + rate / 100)
        assert abs(regrossed - calc.total_amount) <= Decimal("0.01") * (1 + rate / 100)


def test_every_figure_has_two_decimal_places():
    for lines, rate in _varied_line_sets(count=50):
        for mode in ("NONE", "EXCLUSIVE", "INCLUSIVE"):
            calc = calculate_tax(lines, mode, rate)
            for value in calc.as_dict().values():
                assert value.as_tuple().exponent == -2
