"""
Line and document amount calculations.

All amounts are Decimal, rounded half-up to 2 places per line:

    gross = quantity * unit_price
    net   = gross - discount
    tax   = net * tax_rate / 100
    total = net + tax

Document totals are the sums of the rounded line values, so
total == subtotal - discount + tax always holds exactly.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

Number = Union[Decimal, int, float, str]

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")
HUNDRED = Decimal("100")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Not a number: {value!r}") from e


def money(value: Number) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def format_money(value: Number) -> str:
    return f"{money(value):.2f}"


def format_unit_price(value: Number) -> str:
    return f"{to_decimal(value).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP):.4f}"


def format_quantity(value: Number) -> str:
    """Quantity without trailing zeros, e.g. 2, 2.5."""
    normalized = to_decimal(value).normalize()
    return f"{normalized:f}"


@dataclass(frozen=True)
class LineAmounts:
    gross: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal

    @property
    def net(self) -> Decimal:
        return self.gross - self.discount


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal

    @property
    def net(self) -> Decimal:
        return self.total - self.tax


def compute_line(
    quantity: Number,
    unit_price: Number,
    tax_rate: Number,
    discount: Number = 0,
) -> LineAmounts:
    gross = money(to_decimal(quantity) * to_decimal(unit_price))
    discount_amount = money(discount)
    net = gross - discount_amount
    tax = money(net * to_decimal(tax_rate) / HUNDRED)
    return LineAmounts(gross=gross, discount=discount_amount, tax=tax, total=net + tax)


def compute_totals(lines: Iterable[LineAmounts]) -> DocumentTotals:
    subtotal = discount = tax = total = Decimal("0.00")
    for line in lines:
        subtotal += line.gross
        discount += line.discount
        tax += line.tax
        total += line.total
    return DocumentTotals(subtotal=subtotal, discount=discount, tax=tax, total=total)
