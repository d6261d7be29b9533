from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import text

import db_manager
import documents
import ledger
from errors import ConflictError, NotFoundError, ValidationError
from models import db, Payment


@pytest.fixture
def invoice(company, client, items):
    return documents.create_invoice(company.id, {'client_id': client.id}, items)


def test_partial_payments_leave_invoice_open(invoice):
    ledger.add_payment(invoice.id, '120', payment_date='2024-04-01')
    ledger.add_payment(invoice.id, '100')

    invoice = documents.get_invoice(invoice.id)
    assert invoice.paid_amount == Decimal('220.00')
    assert invoice.balance == Decimal('75.00')
    assert invoice.status == 'unpaid'
    assert invoice.balance == invoice.total - invoice.paid_amount


def test_payment_above_balance_is_rejected(invoice):
    ledger.add_payment(invoice.id, '120')
    ledger.add_payment(invoice.id, '100')

    with pytest.raises(ValidationError):
        ledger.add_payment(invoice.id, '80')
    invoice = documents.get_invoice(invoice.id)
    assert invoice.paid_amount == Decimal('220.00')
    assert len(invoice.payments) == 2


def test_exact_balance_settles_invoice(invoice):
    ledger.add_payment(invoice.id, '120')
    ledger.add_payment(invoice.id, '100')
    ledger.add_payment(invoice.id, '75', method='check', reference='CHK-118')

    invoice = documents.get_invoice(invoice.id)
    assert invoice.paid_amount == Decimal('295.00')
    assert invoice.balance == Decimal('0.00')
    assert invoice.status == 'paid'


def test_sent_status_is_kept_on_partial_payment(company, client, items):
    sent = documents.create_invoice(company.id, {'client_id': client.id, 'status': 'sent'}, items)
    ledger.add_payment(sent.id, '20')
    assert documents.get_invoice(sent.id).status == 'sent'


def test_overdue_status_is_kept_on_partial_payment(invoice):
    documents.update_invoice(invoice.id, {'status': 'overdue'})
    ledger.add_payment(invoice.id, '50')
    assert documents.get_invoice(invoice.id).status == 'overdue'


@pytest.mark.parametrize('amount', ['0', '-5', 'ten', None])
def test_invalid_amount_is_rejected(invoice, amount):
    with pytest.raises(ValidationError):
        ledger.add_payment(invoice.id, amount)
    assert Payment.query.count() == 0


def test_unknown_method_is_rejected(invoice):
    with pytest.raises(ValidationError):
        ledger.add_payment(invoice.id, '10', method='bitcoin')


def test_missing_invoice(app):
    with pytest.raises(NotFoundError):
        ledger.add_payment(4242, '10')


def test_payment_defaults(invoice):
    payment = ledger.add_payment(invoice.id, '10.005')

    assert payment.amount == Decimal('10.00')
    assert payment.payment_method == 'bank_transfer'
    assert payment.payment_date == date.today()


def test_list_and_serialize_payments(invoice):
    ledger.add_payment(invoice.id, '10', payment_date='2024-04-01', method='cash', notes='Deposit')
    ledger.add_payment(invoice.id, '15', payment_date='2024-04-02')

    payments = [ledger.serialize_payment(p) for p in ledger.list_payments(invoice.id)]
    assert [p['amount'] for p in payments] == ['10.00', '15.00']
    assert payments[0]['date'] == '2024-04-01'
    assert payments[0]['method'] == 'cash'
    assert payments[0]['notes'] == 'Deposit'


def test_settle_status():
    assert ledger.settle_status('draft', Decimal('10'), Decimal('100')) == 'unpaid'
    assert ledger.settle_status('sent', Decimal('10'), Decimal('100')) == 'sent'
    assert ledger.settle_status('overdue', Decimal('100'), Decimal('100')) == 'paid'


def test_lost_update_is_a_conflict(invoice, monkeypatch):
    load = ledger._locked_invoice

    def load_then_touch(invoice_id):
        found = load(invoice_id)
        # Row version moves on between the read and the write, as with a concurrent payment
        db.session.execute(text("UPDATE invoices SET version = version + 1 WHERE id = :id"), {'id': invoice_id})
        return found

    monkeypatch.setattr(ledger, '_locked_invoice', load_then_touch)
    with pytest.raises(ConflictError):
        ledger.add_payment(invoice.id, '10')
    assert Payment.query.count() == 0


def test_concurrent_payments_cannot_overpay(file_app, run_concurrently):
    with file_app.app_context():
        company = db_manager.create_company({'name': 'Busy Co'})
        client = db_manager.add_client(company.id, {'name': 'Acme SARL'})
        invoice_id = documents.create_invoice(company.id, {'client_id': client.id}, [
            {'description': 'Work', 'quantity': 1, 'unit_price': '295', 'tax_rate': 0},
        ]).id

    results, errors = run_concurrently(file_app, 2, lambda: ledger.add_payment(invoice_id, '200').id)

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], (ConflictError, ValidationError))
    with file_app.app_context():
        invoice = documents.get_invoice(invoice_id)
        assert invoice.paid_amount == Decimal('200.00')
        assert invoice.balance == Decimal('95.00')
        assert len(invoice.payments) == 1
