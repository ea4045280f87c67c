"""
Tax calculation. Pure functions, no I/O.

Tax modes:
  NONE       subtotal = total = sum(lines), tax = 0
  EXCLUSIVE  tax is added on top: total = subtotal + subtotal * rate/100
  INCLUSIVE  prices already include tax: subtotal = total / (1 + rate/100)

All arithmetic is Decimal, rounded to 2 dp with ROUND_HALF_UP (half away from
zero). The line sum is rounded first and the remaining figure is derived from
the two rounded ones, so subtotal + tax == total always holds exactly.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping

TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "USD": "$",
    "EUR": "€",
    "JPY": "¥",
    "CAD": "CA$",
    "AUD": "A$",
}


@dataclass(frozen=True)
class TaxCalculation:
    subtotal_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal_amount": self.subtotal_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
        }


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1 rather than its binary expansion
        return Decimal(str(value))
    return Decimal(value)


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item[name]
    return getattr(item, name)


def line_total(quantity: Any, unit_price: Any) -> Decimal:
    return quantize_money(to_decimal(quantity) * to_decimal(unit_price))


def calculate_tax(
    line_items: Iterable[Any],
    tax_mode: str,
    tax_rate: Any,
) -> TaxCalculation:
    """Compute subtotal/tax/total for line items with `quantity` and `unit_price`."""
    lines_total = quantize_money(sum(
        (to_decimal(_field(li, "quantity")) * to_decimal(_field(li, "unit_price"))
         for li in line_items),
        ZERO,
    ))
    rate = to_decimal(tax_rate or 0)

    if tax_mode == "EXCLUSIVE":
        subtotal = lines_total
        tax = quantize_money(subtotal * rate / HUNDRED)
        total = subtotal + tax
    elif tax_mode == "INCLUSIVE":
        total = lines_total
        subtotal = quantize_money(total / (1 + rate / HUNDRED))
        tax = total - subtotal
    else:
        # NONE, and anything unrecognised
        subtotal = lines_total
        tax = quantize_money(ZERO)
        total = lines_total

    return TaxCalculation(
        subtotal_amount=subtotal,
        tax_amount=tax,
        total_amount=total,
    )


def format_currency(amount: Any, currency: str = "GBP") -> str:
    """Display string, e.g. (Decimal('1234.5'), 'GBP') -> '£1,234.50'."""
    value = quantize_money(amount)
    symbol = CURRENCY_SYMBOLS.get(currency)
    sign = "-" if value < 0 else ""
    body = f"{abs(value):,.2f}"
    if symbol:
        return f"{sign}{symbol}{body}"
    return f"{sign}{body} {currency}"
