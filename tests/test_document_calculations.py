from decimal import Decimal

import pytest

from fiscal_engine.services.document_calculations import (
    compute_line,
    compute_totals,
    format_money,
    format_quantity,
    format_unit_price,
    money,
    to_decimal,
)


def test_money_rounds_half_up():
    assert money("38.8066") == Decimal("38.81")
    assert money("0.005") == Decimal("0.01")
    assert money("2.675") == Decimal("2.68")


def test_to_decimal_keeps_printed_float_value():
    assert to_decimal(0.1) == Decimal("0.1")


def test_to_decimal_rejects_garbage():
    with pytest.raises(ValueError):
        to_decimal("abc")


def test_compute_line_with_tax():
    amounts = compute_line(Decimal("1"), Decimal("277.19"), Decimal("14"))
    assert amounts.gross == Decimal("277.19")
    assert amounts.tax == Decimal("38.81")
    assert amounts.total == Decimal("316.00")


def test_compute_line_applies_discount_before_tax():
    amounts = compute_line(2, "100", 14, discount="10")
    assert amounts.net == Decimal("190.00")
    assert amounts.tax == Decimal("26.60")
    assert amounts.total == Decimal("216.60")


def test_totals_are_sums_of_rounded_lines():
    lines = [
        compute_line(2, "300", 14),
        compute_line(1, "277.19", 14),
    ]
    totals = compute_totals(lines)
    assert totals.subtotal == Decimal("877.19")
    assert totals.tax == Decimal("122.81")
    assert totals.total == Decimal("1000.00")
    assert totals.total == totals.subtotal - totals.discount + totals.tax


def test_formatting():
    assert format_money(Decimal("5")) == "5.00"
    assert format_unit_price("277.19") == "277.1900"
    assert format_quantity(Decimal("2.000")) == "2"
    assert format_quantity(Decimal("2.500")) == "2.5"
    assert format_quantity(Decimal("20.000")) == "20"
