import io

import pytest

import db_manager
import documents
from pdf_builder import DocumentPDF


def test_invoice_pdf(company, client, items):
    invoice = documents.create_invoice(company.id, {
        'client_id': client.id, 'notes': 'R&D <phase 1>', 'terms': 'Net 30',
    }, items)

    buffer = DocumentPDF(documents.serialize_invoice(invoice), db_manager.serialize_company(company)).generate(io.BytesIO())
    assert buffer.getvalue().startswith(b'%PDF')


def test_quote_pdf_to_file(tmp_path, company, client, items):
    quote = documents.create_quote(company.id, {'client_id': client.id}, items)
    target = tmp_path / 'quote.pdf'

    DocumentPDF(documents.serialize_quote(quote), db_manager.serialize_company(company), 'quote').generate(str(target))
    assert target.read_bytes().startswith(b'%PDF')


def test_unknown_kind():
    with pytest.raises(ValueError):
        DocumentPDF({}, {}, 'receipt')
