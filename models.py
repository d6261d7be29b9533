from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Fixed-point money: two decimals, amounts up to 10^10
Money = db.Numeric(12, 2)
Quantity = db.Numeric(12, 3)
Rate = db.Numeric(5, 2)

QUOTE_STATUSES = ('draft', 'sent', 'accepted', 'rejected')
INVOICE_STATUSES = ('draft', 'sent', 'paid', 'overdue', 'unpaid')
PAYMENT_METHODS = ('cash', 'bank_transfer', 'check', 'card', 'other')


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Company(db.Model):
    __tablename__ = 'companies'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    email = db.Column(db.String)
    phone = db.Column(db.String)
    address = db.Column(db.String)
    city = db.Column(db.String)
    postal_code = db.Column(db.String)
    country = db.Column(db.String)
    tax_id = db.Column(db.String)
    bank_name = db.Column(db.String)
    bank_account = db.Column(db.String)
    bank_iban = db.Column(db.String)
    bank_bic = db.Column(db.String)
    currency = db.Column(db.String, nullable=False, default='EUR')
    default_payment_terms = db.Column(db.String)

    invoice_prefix = db.Column(db.String, nullable=False, default='INV-')
    invoice_start_number = db.Column(db.Integer, nullable=False, default=1000)
    quote_prefix = db.Column(db.String, nullable=False, default='QUO-')
    quote_start_number = db.Column(db.Integer, nullable=False, default=1)
    # Part of the numbering contract: numbers sort as strings, so the width must not change
    number_padding = db.Column(db.Integer, nullable=False, default=4)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tax_rates = db.relationship('TaxRate', backref='company', lazy=True, cascade='all, delete-orphan')


class Client(db.Model):
    __tablename__ = 'clients'
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False, index=True)
    name = db.Column(db.String, nullable=False)
    email = db.Column(db.String)
    phone = db.Column(db.String)
    contact_person = db.Column(db.String)
    address = db.Column(db.String)
    city = db.Column(db.String)
    postal_code = db.Column(db.String)
    country = db.Column(db.String)
    tax_id = db.Column(db.String)
    notes = db.Column(db.String)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    quotes = db.relationship('Quote', backref='client', lazy=True)
    invoices = db.relationship('Invoice', backref='client', lazy=True)


class Product(db.Model):
    __tablename__ = 'products'
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False, index=True)
    name = db.Column(db.String, nullable=False)
    description = db.Column(db.String)
    unit_price = db.Column(Money, nullable=False, default=0)
    tax_rate = db.Column(Rate, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class TaxRate(db.Model):
    __tablename__ = 'tax_rates'
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False, index=True)
    name = db.Column(db.String, nullable=False)
    rate = db.Column(Rate, nullable=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)


class DocumentSequence(db.Model):
    """Last number issued per company, document type and prefix."""
    __tablename__ = 'document_sequences'
    __table_args__ = (
        db.UniqueConstraint('company_id', 'document_type', 'prefix', name='uq_document_sequence'),
    )
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False)
    document_type = db.Column(db.String, nullable=False)
    prefix = db.Column(db.String, nullable=False, default='')
    last_value = db.Column(db.Integer, nullable=False)


class Quote(db.Model):
    __tablename__ = 'quotes'
    __table_args__ = (
        db.UniqueConstraint('company_id', 'quote_number', name='uq_quote_number'),
    )
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    quote_number = db.Column(db.String, nullable=False)
    status = db.Column(db.String, nullable=False, default='draft')
    date = db.Column(db.Date, nullable=False)
    valid_until = db.Column(db.Date, nullable=False)
    subtotal = db.Column(Money, nullable=False, default=0)
    tax_amount = db.Column(Money, nullable=False, default=0)
    total = db.Column(Money, nullable=False, default=0)
    notes = db.Column(db.String)
    terms = db.Column(db.String)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship('QuoteItem', backref='quote', lazy=True,
                            order_by='QuoteItem.sort_order', cascade='all, delete-orphan')


class QuoteItem(db.Model):
    __tablename__ = 'quote_items'
    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    product_id = db.Column(db.Integer)
    description = db.Column(db.String, nullable=False)
    quantity = db.Column(Quantity, nullable=False)
    unit_price = db.Column(Money, nullable=False)
    tax_rate = db.Column(Rate, nullable=False, default=0)
    total = db.Column(Money, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)


class Invoice(db.Model):
    __tablename__ = 'invoices'
    __table_args__ = (
        db.UniqueConstraint('company_id', 'invoice_number', name='uq_invoice_number'),
    )
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    # Provenance only, the quote may be deleted later
    quote_id = db.Column(db.Integer)
    invoice_number = db.Column(db.String, nullable=False)
    status = db.Column(db.String, nullable=False, default='draft')
    date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    subtotal = db.Column(Money, nullable=False, default=0)
    tax_amount = db.Column(Money, nullable=False, default=0)
    total = db.Column(Money, nullable=False, default=0)
    paid_amount = db.Column(Money, nullable=False, default=0)
    balance = db.Column(Money, nullable=False, default=0)
    notes = db.Column(db.String)
    terms = db.Column(db.String)
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship('InvoiceItem', backref='invoice', lazy=True,
                            order_by='InvoiceItem.sort_order', cascade='all, delete-orphan')
    payments = db.relationship('Payment', backref='invoice', lazy=True,
                               order_by='Payment.id', cascade='all, delete-orphan')

    __mapper_args__ = {'version_id_col': version}


class InvoiceItem(db.Model):
    __tablename__ = 'invoice_items'
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False)
    product_id = db.Column(db.Integer)
    description = db.Column(db.String, nullable=False)
    quantity = db.Column(Quantity, nullable=False)
    unit_price = db.Column(Money, nullable=False)
    tax_rate = db.Column(Rate, nullable=False, default=0)
    total = db.Column(Money, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)


class Payment(db.Model):
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id'), nullable=False, index=True)
    amount = db.Column(Money, nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    payment_method = db.Column(db.String, nullable=False, default='bank_transfer')
    reference = db.Column(db.String)
    notes = db.Column(db.String)
    created_at = db.Column(db.DateTime, default=utcnow)
