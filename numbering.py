"""
Sequential document numbers per company.

Numbers are reserved from a DocumentSequence row that is incremented by a
single UPDATE inside the same transaction that inserts the document. The
increment happens in the database, so concurrent issuances queue on the row
write and each reads back its own value. The first reservation for a
(company, document type, prefix) seeds the counter from the highest number
already issued under that prefix.
"""
import logging
import re

from sqlalchemy import update

from db_manager import atomic, get_company
from errors import ValidationError
from models import db, DocumentSequence, Invoice, Quote

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = {
    'invoice': (Invoice, 'invoice_number', 'invoice_prefix', 'invoice_start_number'),
    'quote': (Quote, 'quote_number', 'quote_prefix', 'quote_start_number'),
}

_SEPARATORS = re.compile(r'[-_/.\s]')
_DIGITS = re.compile(r'[0-9]+')


def _document_type(document_type):
    try:
        return DOCUMENT_TYPES[document_type]
    except KeyError:
        raise ValidationError(f"Unknown document type: {document_type}") from None


def company_prefix(company, document_type):
    return getattr(company, _document_type(document_type)[2]) or ''


def start_number(company, document_type):
    return getattr(company, _document_type(document_type)[3])


def format_number(prefix, value, padding=4):
    return f"{prefix}{str(value).zfill(padding or 0)}"


def parse_sequence(number, prefix):
    """Integer part of a number issued under prefix, or None if it has none."""
    if not number or not number.startswith(prefix):
        return None
    remainder = _SEPARATORS.sub('', number[len(prefix):])
    if not _DIGITS.fullmatch(remainder):
        return None
    return int(remainder)


def last_issued_number(company_id, document_type, prefix):
    # String ordering: only meaningful because the padding width is fixed per company
    model, column_name = _document_type(document_type)[:2]
    column = getattr(model, column_name)
    return (db.session.query(column)
            .filter(model.company_id == company_id, column.startswith(prefix, autoescape=True))
            .order_by(column.desc())
            .limit(1)
            .scalar())


def _seed_value(company, document_type, prefix):
    last = last_issued_number(company.id, document_type, prefix)
    parsed = parse_sequence(last, prefix) if last else None
    if parsed is None:
        return start_number(company, document_type) - 1
    return parsed


def _sequence_filter(company, document_type, prefix):
    return (DocumentSequence.company_id == company.id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.prefix == prefix)


def _current_value(company, document_type, prefix):
    return (db.session.query(DocumentSequence.last_value)
            .filter(*_sequence_filter(company, document_type, prefix))
            .scalar())


def reserve_number(company, document_type, prefix=None):
    """Reserve the next integer within the current transaction."""
    if prefix is None:
        prefix = company_prefix(company, document_type)
    bumped = db.session.execute(
        update(DocumentSequence)
        .where(*_sequence_filter(company, document_type, prefix))
        .values(last_value=DocumentSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount:
        return _current_value(company, document_type, prefix)

    # First reservation: a concurrent one inserting the same row fails on uq_document_sequence
    value = _seed_value(company, document_type, prefix) + 1
    db.session.add(DocumentSequence(
        company_id=company.id,
        document_type=document_type,
        prefix=prefix,
        last_value=value,
    ))
    db.session.flush()
    return value


def issue_number(company, document_type):
    """Reserve and format the next number with the company prefix and padding."""
    prefix = company_prefix(company, document_type)
    return format_number(prefix, reserve_number(company, document_type, prefix), company.number_padding)


def record_issued(company, document_type, number):
    """Advance the counter past a number that was assigned by hand."""
    prefix = company_prefix(company, document_type)
    parsed = parse_sequence(number, prefix)
    if parsed is None:
        return
    # Without a counter row the next reservation seeds from the issued numbers, this one included
    db.session.execute(
        update(DocumentSequence)
        .where(*_sequence_filter(company, document_type, prefix), DocumentSequence.last_value < parsed)
        .values(last_value=parsed)
        .execution_options(synchronize_session=False)
    )


def next_number(company_id, document_type, prefix=None):
    """Reserve the next number for a company and commit the reservation."""
    with atomic():
        company = get_company(company_id)
        value = reserve_number(company, document_type, prefix)
    logger.info("Reserved %s number %s for company %s", document_type, value, company_id)
    return value


def peek_next_number(company_id, document_type, prefix=None):
    """Next number that would be reserved, without reserving it."""
    company = get_company(company_id)
    if prefix is None:
        prefix = company_prefix(company, document_type)
    current = _current_value(company, document_type, prefix)
    base = current if current is not None else _seed_value(company, document_type, prefix)
    return base + 1
