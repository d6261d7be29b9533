from decimal import Decimal
from types import SimpleNamespace

import pytest

from errors import ValidationError
from money import compute_totals, format_money, line_tax, line_total, line_total_with_tax, round_money, to_decimal


def test_compute_totals_two_lines(items):
    totals = compute_totals(items)

    assert totals.subtotal == Decimal('250.00')
    assert totals.tax_amount == Decimal('45.00')
    assert totals.total == Decimal('295.00')


def test_compute_totals_empty():
    assert compute_totals([]) == (Decimal('0.00'), Decimal('0.00'), Decimal('0.00'))


def test_compute_totals_accepts_objects():
    line = SimpleNamespace(quantity=Decimal('3'), unit_price=Decimal('19.99'), tax_rate=Decimal('5.5'))
    totals = compute_totals([line])

    assert totals.subtotal == Decimal('59.97')
    assert totals.tax_amount == Decimal('3.30')
    assert totals.total == Decimal('63.27')


def test_total_is_sum_of_rounded_parts():
    """Tax is rounded once over the whole document, not per line."""
    lines = [{'quantity': 1, 'unit_price': '0.05', 'tax_rate': 10} for _ in range(3)]
    totals = compute_totals(lines)

    assert totals.subtotal == Decimal('0.15')
    # 3 x 0.005 = 0.015 -> 0.02 (half-even)
    assert totals.tax_amount == Decimal('0.02')
    assert totals.total == totals.subtotal + totals.tax_amount


def test_recomputing_gives_identical_results(items):
    assert compute_totals(items) == compute_totals(items)


def test_float_inputs_do_not_leak_binary_noise():
    totals = compute_totals([{'quantity': 3, 'unit_price': 0.1, 'tax_rate': 0}])
    assert totals.subtotal == Decimal('0.30')


def test_round_money_half_even():
    assert round_money('2.345') == Decimal('2.34')
    assert round_money('2.355') == Decimal('2.36')


def test_line_helpers():
    assert line_total(2, '100') == Decimal('200')
    assert line_tax(2, '100', 20) == Decimal('40')
    assert line_total_with_tax(2, '100', 20) == Decimal('240')


@pytest.mark.parametrize('value', [None, '', 'abc', True, 'NaN', 'Infinity'])
def test_to_decimal_rejects(value):
    with pytest.raises(ValidationError):
        to_decimal(value, 'unit_price')


def test_format_money():
    assert format_money(Decimal('1234.5')) == '1,234.50 EUR'
    assert format_money('10', 'USD') == '10.00 USD'
