import logging
from datetime import date

from db_manager import atomic, format_amount, format_date, parse_date
from errors import ConflictError, NotFoundError, ValidationError
from models import db, Invoice, Payment, PAYMENT_METHODS
from money import ZERO, round_money, to_decimal

logger = logging.getLogger(__name__)


def paid_total(invoice):
    return sum((payment.amount for payment in invoice.payments), ZERO)


def settle_status(prior_status, paid_amount, total):
    """Invoice status once a payment has been applied."""
    if paid_amount >= total:
        return 'paid'
    if prior_status == 'draft':
        return 'unpaid'
    return prior_status


def recompute_balance(invoice):
    invoice.paid_amount = round_money(paid_total(invoice))
    invoice.balance = round_money(invoice.total) - invoice.paid_amount


def _locked_invoice(invoice_id):
    invoice = db.session.get(Invoice, invoice_id, with_for_update=True)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def add_payment(invoice_id, amount, payment_date=None, method='bank_transfer', reference=None, notes=None):
    """
    Record a payment against an invoice.

    The invoice row is locked for the duration of the transaction and carries
    a version counter, so the balance check and the paid amount update are
    applied atomically: a payment can never take paid_amount above total.
    """
    amount = round_money(to_decimal(amount, 'amount'))
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    method = method or 'bank_transfer'
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method: {method}")
    payment_date = parse_date(payment_date, 'payment_date') or date.today()

    with atomic():
        invoice = _locked_invoice(invoice_id)
        current_balance = round_money(invoice.total) - paid_total(invoice)
        if amount > current_balance:
            raise ValidationError(
                f"Payment amount {amount} exceeds the remaining balance {format_amount(current_balance)}"
            )

        payment = Payment(
            amount=amount,
            payment_date=payment_date,
            payment_method=method,
            reference=reference,
            notes=notes,
        )
        invoice.payments.append(payment)
        recompute_balance(invoice)
        if invoice.paid_amount > invoice.total:
            raise ConflictError(f"Invoice {invoice.invoice_number} would be overpaid")
        invoice.status = settle_status(invoice.status, invoice.paid_amount, invoice.total)

    logger.info("Recorded payment of %s on invoice %s, balance now %s",
                amount, invoice.invoice_number, invoice.balance)
    return payment


def list_payments(invoice_id):
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return list(invoice.payments)


def serialize_payment(payment):
    return {
        'id': payment.id,
        'invoice_id': payment.invoice_id,
        'amount': format_amount(payment.amount),
        'date': format_date(payment.payment_date),
        'method': payment.payment_method,
        'reference': payment.reference,
        'notes': payment.notes,
    }
