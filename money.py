"""
Monetary calculations for quotes and invoices.

Amounts are accumulated exactly with Decimal and only rounded to the cent
when totals are finalized, so that total == subtotal + tax_amount holds for
the stored values.
"""
from collections import namedtuple
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from errors import ValidationError

CENT = Decimal('0.01')
QUANTITY_STEP = Decimal('0.001')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

Totals = namedtuple('Totals', ['subtotal', 'tax_amount', 'total'])


def to_decimal(value, field='amount'):
    if value is None or value == '':
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # str() first so that 0.1 becomes Decimal('0.1') and not its binary expansion
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number") from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def round_money(value):
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


def round_quantity(value):
    return to_decimal(value, 'quantity').quantize(QUANTITY_STEP, rounding=ROUND_HALF_EVEN)


def _field(item, name):
    if isinstance(item, Mapping):
        value = item.get(name)
    else:
        value = getattr(item, name, None)
    return ZERO if value is None else to_decimal(value, name)


def line_total(quantity, unit_price):
    """quantity x unit price, unrounded."""
    return to_decimal(quantity, 'quantity') * to_decimal(unit_price, 'unit_price')


def line_tax(quantity, unit_price, tax_rate):
    return line_total(quantity, unit_price) * to_decimal(tax_rate, 'tax_rate') / HUNDRED


def line_total_with_tax(quantity, unit_price, tax_rate):
    return line_total(quantity, unit_price) * (1 + to_decimal(tax_rate, 'tax_rate') / HUNDRED)


def compute_totals(items):
    """
    Compute subtotal, tax and grand total for an ordered sequence of line items.

    Items may be mappings or objects exposing quantity, unit_price and
    tax_rate. An empty sequence gives zero totals.
    """
    subtotal = ZERO
    tax_amount = ZERO
    for item in items:
        quantity = _field(item, 'quantity')
        unit_price = _field(item, 'unit_price')
        tax_rate = _field(item, 'tax_rate')
        subtotal += line_total(quantity, unit_price)
        tax_amount += line_tax(quantity, unit_price, tax_rate)

    subtotal = round_money(subtotal)
    tax_amount = round_money(tax_amount)
    return Totals(subtotal, tax_amount, subtotal + tax_amount)


def format_money(value, currency='EUR'):
    return f"{round_money(value):,.2f} {currency}"
