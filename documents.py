"""
Quotes and invoices: header, ordered line items and derived totals.

Every mutation runs in a single transaction. Replacing line items deletes the
old rows and inserts the new ones atomically, and converting a quote creates
the invoice and accepts the quote together.
"""
import logging
from collections import namedtuple
from collections.abc import Mapping
from datetime import date, timedelta

from flask import current_app

import ledger
import numbering
from db_manager import (
    atomic, format_amount, format_date, get_client, get_company, get_default_tax_rate,
    get_product, parse_date, serialize_client,
)
from errors import NotFoundError, ValidationError
from models import db, Invoice, InvoiceItem, Quote, QuoteItem, INVOICE_STATUSES, QUOTE_STATUSES
from money import ZERO, compute_totals, line_total, line_total_with_tax, round_money, round_quantity, to_decimal

logger = logging.getLogger(__name__)

DocumentKind = namedtuple('DocumentKind', [
    'name', 'model', 'item_model', 'number_field', 'statuses', 'end_field', 'days_setting',
])

QUOTE = DocumentKind('quote', Quote, QuoteItem, 'quote_number', QUOTE_STATUSES,
                     'valid_until', 'QUOTE_VALID_DAYS')
INVOICE = DocumentKind('invoice', Invoice, InvoiceItem, 'invoice_number', INVOICE_STATUSES,
                       'due_date', 'INVOICE_DUE_DAYS')

# Always computed from line items and payments, never patched directly
DERIVED_FIELDS = ('subtotal', 'tax_amount', 'total', 'paid_amount', 'balance')


# ------------------------------------------------------------------
# Line items
# ------------------------------------------------------------------

def _non_negative(value, field):
    number = to_decimal(value, field)
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def _build_items(company, kind, items):
    if items is None:
        return []
    if not isinstance(items, (list, tuple)):
        raise ValidationError("items must be a list")

    default_tax_rate = None
    built = []
    for position, raw in enumerate(items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"Line item {position + 1} must be an object")

        product = None
        if raw.get('product_id') is not None:
            product = get_product(raw['product_id'], company.id)

        description = str(raw.get('description') or (product.name if product else '')).strip()
        if not description:
            raise ValidationError(f"Line item {position + 1}: description is required")

        unit_price = raw.get('unit_price')
        if unit_price is None:
            if product is None:
                raise ValidationError(f"Line item {position + 1}: unit_price is required")
            unit_price = product.unit_price

        tax_rate = raw.get('tax_rate')
        if tax_rate is None:
            if product is not None:
                tax_rate = product.tax_rate
            else:
                if default_tax_rate is None:
                    default_tax_rate = get_default_tax_rate(company.id) or ZERO
                tax_rate = default_tax_rate

        # Column scale: totals are computed from the values as stored
        quantity = round_quantity(_non_negative(raw.get('quantity', 1), 'quantity'))
        unit_price = round_money(_non_negative(unit_price, 'unit_price'))
        tax_rate = round_money(_non_negative(tax_rate, 'tax_rate'))
        if tax_rate > 100:
            raise ValidationError("tax_rate must be between 0 and 100")

        built.append(kind.item_model(
            product_id=product.id if product else None,
            description=description,
            quantity=quantity,
            unit_price=unit_price,
            tax_rate=tax_rate,
            total=round_money(line_total(quantity, unit_price)),
            sort_order=position,
        ))
    return built


def _copy_items(kind, source_items):
    return [
        kind.item_model(
            product_id=item.product_id,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            tax_rate=item.tax_rate,
            total=item.total,
            sort_order=item.sort_order,
        )
        for item in source_items
    ]


def _set_totals(document):
    totals = compute_totals(document.items)
    document.subtotal = totals.subtotal
    document.tax_amount = totals.tax_amount
    document.total = totals.total
    return totals


# ------------------------------------------------------------------
# Header
# ------------------------------------------------------------------

def _apply_header(company, kind, document, data, creating):
    for field in DERIVED_FIELDS:
        if field in data:
            raise ValidationError(f"{field} is computed from the line items and cannot be set")

    if creating or 'client_id' in data:
        if data.get('client_id') is None:
            raise ValidationError("client_id is required")
        document.client_id = get_client(data['client_id'], company.id).id

    linked_quote = None
    if kind is INVOICE and 'quote_id' in data:
        quote_id = data['quote_id']
        if quote_id is not None:
            linked_quote = db.session.get(Quote, quote_id)
            if linked_quote is None or linked_quote.company_id != company.id:
                raise NotFoundError(f"Quote {quote_id} not found")
            if linked_quote.client_id != document.client_id:
                raise ValidationError(f"Quote {linked_quote.quote_number} was made out to another client")
            if linked_quote.status != 'accepted':
                raise ValidationError(f"Quote {linked_quote.quote_number} has not been accepted")
        document.quote_id = quote_id

    if creating or 'date' in data:
        document.date = parse_date(data.get('date'), 'date') or date.today()

    if creating or kind.end_field in data:
        end = parse_date(data.get(kind.end_field), kind.end_field)
        if end is None:
            end = document.date + timedelta(days=current_app.config.get(kind.days_setting, 30))
        setattr(document, kind.end_field, end)

    if getattr(document, kind.end_field) < document.date:
        raise ValidationError(f"{kind.end_field} must not be before the document date")

    if 'status' in data or creating:
        status = data.get('status') or 'draft'
        if status not in kind.statuses:
            raise ValidationError(f"Invalid {kind.name} status: {status}")
        document.status = status

    for field in ('notes', 'terms'):
        if field in data:
            setattr(document, field, data[field])
    return linked_quote


def _document_number(data, kind):
    number = data.get(kind.number_field)
    if number is None:
        return None
    number = str(number).strip()
    if not number:
        raise ValidationError(f"{kind.number_field} must not be empty")
    return number


# ------------------------------------------------------------------
# Generic operations
# ------------------------------------------------------------------

def _get_document(kind, document_id, lock=False):
    document = db.session.get(kind.model, document_id, with_for_update=True if lock else None)
    if document is None:
        raise NotFoundError(f"{kind.name.capitalize()} {document_id} not found")
    return document


def _create(kind, company_id, data, items, number=None):
    data = data or {}
    with atomic():
        company = get_company(company_id)
        document = kind.model(company_id=company.id)
        linked_quote = _apply_header(company, kind, document, data, creating=True)
        if linked_quote is not None and not items:
            document.items = _copy_items(kind, linked_quote.items)
        else:
            document.items = _build_items(company, kind, items)
        _set_totals(document)
        if kind is INVOICE:
            document.paid_amount = ZERO
            document.balance = document.total

        number = number or _document_number(data, kind)
        if number:
            numbering.record_issued(company, kind.name, number)
        else:
            number = numbering.issue_number(company, kind.name)
        setattr(document, kind.number_field, number)
        if kind is INVOICE:
            _check_invoice_status(document)
        db.session.add(document)

    logger.info("Created %s %s for company %s (total %s)",
                kind.name, number, company_id, document.total)
    return document


def _restate_invoice(invoice):
    ledger.recompute_balance(invoice)
    if invoice.paid_amount > invoice.total:
        raise ValidationError(
            f"New total {invoice.total} is below the amount already paid ({invoice.paid_amount})"
        )
    if invoice.paid_amount > 0:
        if invoice.paid_amount >= invoice.total:
            invoice.status = 'paid'
        elif invoice.status == 'paid':
            invoice.status = 'unpaid'


def _check_invoice_status(invoice):
    if invoice.status == 'paid' and invoice.balance > 0:
        raise ValidationError(f"Invoice {invoice.invoice_number} has an open balance and cannot be marked paid")
    if invoice.status != 'paid' and invoice.paid_amount > 0 and invoice.balance == 0:
        raise ValidationError(f"Invoice {invoice.invoice_number} is fully paid and must stay paid")


def _update(kind, document_id, data, items=None):
    data = data or {}
    with atomic():
        document = _get_document(kind, document_id, lock=True)
        company = get_company(document.company_id)
        _apply_header(company, kind, document, data, creating=False)

        number = _document_number(data, kind)
        if number and number != getattr(document, kind.number_field):
            numbering.record_issued(company, kind.name, number)
            setattr(document, kind.number_field, number)

        if items is not None:
            document.items = _build_items(company, kind, items)
            _set_totals(document)
            if kind is INVOICE:
                _restate_invoice(document)
        if kind is INVOICE:
            _check_invoice_status(document)

    logger.info("Updated %s %s%s", kind.name, getattr(document, kind.number_field),
                " (line items replaced)" if items is not None else "")
    return document


def _delete(kind, document_id):
    with atomic():
        document = _get_document(kind, document_id)
        number = getattr(document, kind.number_field)
        db.session.delete(document)
    logger.info("Deleted %s %s", kind.name, number)


def _list(kind, company_id, status=None, client_id=None):
    get_company(company_id)
    query = kind.model.query.filter_by(company_id=company_id)
    if status and status != 'All':
        if status not in kind.statuses:
            raise ValidationError(f"Invalid {kind.name} status: {status}")
        query = query.filter_by(status=status)
    if client_id is not None:
        query = query.filter_by(client_id=client_id)
    return query.order_by(kind.model.created_at.desc(), kind.model.id.desc()).all()


# ------------------------------------------------------------------
# Quotes
# ------------------------------------------------------------------

def create_quote(company_id, data, items, quote_number=None):
    return _create(QUOTE, company_id, data, items, quote_number)


def get_quote(quote_id):
    return _get_document(QUOTE, quote_id)


def list_quotes(company_id, status=None, client_id=None):
    return _list(QUOTE, company_id, status, client_id)


def update_quote(quote_id, data, items=None):
    return _update(QUOTE, quote_id, data, items)


def delete_quote(quote_id):
    _delete(QUOTE, quote_id)


def convert_quote_to_invoice(quote_id, invoice_date=None):
    """Create a draft invoice from a quote and mark the quote accepted, in one transaction."""
    with atomic():
        quote = _get_document(QUOTE, quote_id, lock=True)
        if quote.status == 'rejected':
            raise ValidationError(f"Quote {quote.quote_number} was rejected and cannot be invoiced")
        if Invoice.query.filter_by(company_id=quote.company_id, quote_id=quote.id).first():
            raise ValidationError(f"Quote {quote.quote_number} has already been invoiced")
        company = get_company(quote.company_id)

        invoice = Invoice(
            company_id=company.id,
            client_id=quote.client_id,
            quote_id=quote.id,
            status='draft',
            date=parse_date(invoice_date, 'date') or date.today(),
            due_date=quote.date + timedelta(days=current_app.config.get('INVOICE_DUE_DAYS', 30)),
            subtotal=quote.subtotal,
            tax_amount=quote.tax_amount,
            total=quote.total,
            paid_amount=ZERO,
            balance=quote.total,
            notes=quote.notes,
            terms=quote.terms,
        )
        invoice.items = _copy_items(INVOICE, quote.items)
        invoice.invoice_number = numbering.issue_number(company, 'invoice')
        db.session.add(invoice)
        quote.status = 'accepted'

    logger.info("Converted quote %s into invoice %s", quote.quote_number, invoice.invoice_number)
    return invoice


# ------------------------------------------------------------------
# Invoices
# ------------------------------------------------------------------

def create_invoice(company_id, data, items, invoice_number=None):
    return _create(INVOICE, company_id, data, items, invoice_number)


def get_invoice(invoice_id):
    return _get_document(INVOICE, invoice_id)


def list_invoices(company_id, status=None, client_id=None):
    return _list(INVOICE, company_id, status, client_id)


def update_invoice(invoice_id, data, items=None):
    return _update(INVOICE, invoice_id, data, items)


def delete_invoice(invoice_id):
    _delete(INVOICE, invoice_id)


def mark_overdue_invoices(today=None):
    today = today or date.today()
    with atomic():
        overdue = Invoice.query.filter(
            Invoice.due_date < today,
            Invoice.status.in_(('sent', 'unpaid')),
            Invoice.balance > 0,
        ).all()
        for invoice in overdue:
            invoice.status = 'overdue'
    if overdue:
        logger.info("Marked %d invoice(s) as overdue", len(overdue))
    return len(overdue)


# ------------------------------------------------------------------
# Serialization
# ------------------------------------------------------------------

def serialize_item(item):
    return {
        'id': item.id,
        'product_id': item.product_id,
        'description': item.description,
        'quantity': str(item.quantity),
        'unit_price': format_amount(item.unit_price),
        'tax_rate': str(item.tax_rate),
        'total': format_amount(item.total),
        'total_with_tax': format_amount(line_total_with_tax(item.quantity, item.unit_price, item.tax_rate)),
    }


def _serialize_header(document, kind):
    return {
        'id': document.id,
        'company_id': document.company_id,
        'client_id': document.client_id,
        kind.number_field: getattr(document, kind.number_field),
        'status': document.status,
        'date': format_date(document.date),
        kind.end_field: format_date(getattr(document, kind.end_field)),
        'subtotal': format_amount(document.subtotal),
        'tax_amount': format_amount(document.tax_amount),
        'total': format_amount(document.total),
        'notes': document.notes,
        'terms': document.terms,
        'created_at': document.created_at.isoformat() if document.created_at else None,
    }


def serialize_quote(quote, with_relations=True):
    data = _serialize_header(quote, QUOTE)
    if with_relations:
        data['items'] = [serialize_item(item) for item in quote.items]
        data['client'] = serialize_client(quote.client) if quote.client else None
    return data


def serialize_invoice(invoice, with_relations=True):
    data = _serialize_header(invoice, INVOICE)
    data['quote_id'] = invoice.quote_id
    data['paid_amount'] = format_amount(invoice.paid_amount)
    data['balance'] = format_amount(invoice.balance)
    if with_relations:
        data['items'] = [serialize_item(item) for item in invoice.items]
        data['payments'] = [ledger.serialize_payment(p) for p in invoice.payments]
        data['client'] = serialize_client(invoice.client) if invoice.client else None
    return data
