import logging
from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from errors import BackendError, ConflictError, InvoicingError, NotFoundError, ValidationError
from models import db, Company, Client, Product, TaxRate, Quote, Invoice
from money import ZERO, round_money, to_decimal

logger = logging.getLogger(__name__)

COMPANY_FIELDS = (
    'name', 'email', 'phone', 'address', 'city', 'postal_code', 'country', 'tax_id',
    'bank_name', 'bank_account', 'bank_iban', 'bank_bic', 'currency', 'default_payment_terms',
    'invoice_prefix', 'invoice_start_number', 'quote_prefix', 'quote_start_number', 'number_padding',
)
CLIENT_FIELDS = (
    'name', 'email', 'phone', 'contact_person', 'address', 'city', 'postal_code',
    'country', 'tax_id', 'notes',
)

DEFAULT_TAX_RATES = (
    ('TVA Standard', '20', True),
    ('TVA Réduite', '10', False),
    ('TVA Intermédiaire', '5.5', False),
)


@contextmanager
def atomic():
    """Run the enclosed writes as one transaction, rolled back as a whole on failure."""
    try:
        yield db.session
        db.session.commit()
    except InvoicingError:
        db.session.rollback()
        raise
    except (IntegrityError, StaleDataError) as e:
        db.session.rollback()
        logger.warning("Transaction rolled back on conflict: %s", e)
        raise ConflictError("The record was modified concurrently or violates a uniqueness rule") from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("Transaction rolled back: %s", e)
        raise BackendError(f"Database error: {e.__class__.__name__}") from e
    except Exception:
        db.session.rollback()
        raise


def parse_date(value, field='date'):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format") from None


def format_date(value):
    return value.isoformat() if value else None


def format_amount(value):
    return str(round_money(value if value is not None else ZERO))


def _required_text(data, key):
    value = str(data.get(key) or '').strip()
    if not value:
        raise ValidationError(f"{key} is required")
    return value


def _non_negative_int(value, field):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer") from None
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def _percentage(value, field='tax_rate'):
    rate = to_decimal(value, field)
    if rate < 0 or rate > 100:
        raise ValidationError(f"{field} must be between 0 and 100")
    return round_money(rate)


def _get_owned(model, obj_id, company_id=None, label=None):
    obj = db.session.get(model, obj_id)
    if obj is None or (company_id is not None and obj.company_id != int(company_id)):
        raise NotFoundError(f"{label or model.__name__} {obj_id} not found")
    return obj


# ------------------------------------------------------------------
# Company
# ------------------------------------------------------------------

def _apply_company_fields(company, data):
    for key in COMPANY_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key in ('invoice_start_number', 'quote_start_number', 'number_padding'):
            value = _non_negative_int(value, key)
        elif key == 'name':
            value = _required_text(data, key)
        elif key in ('invoice_prefix', 'quote_prefix'):
            value = value or ''
        setattr(company, key, value)


def create_company(data):
    with atomic():
        company = Company(name=_required_text(data, 'name'))
        _apply_company_fields(company, data)
        db.session.add(company)
        db.session.flush()
        for name, rate, is_default in DEFAULT_TAX_RATES:
            db.session.add(TaxRate(company_id=company.id, name=name, rate=to_decimal(rate), is_default=is_default))
    logger.info("Created company %s (%s)", company.id, company.name)
    return company


def get_company(company_id):
    return _get_owned(Company, company_id, label='Company')


def update_company(company_id, data):
    with atomic():
        company = get_company(company_id)
        _apply_company_fields(company, data)
    return company


def serialize_company(company):
    data = {key: getattr(company, key) for key in COMPANY_FIELDS}
    data['id'] = company.id
    data['created_at'] = company.created_at.isoformat() if company.created_at else None
    return data


# ------------------------------------------------------------------
# Tax rates
# ------------------------------------------------------------------

def get_tax_rates(company_id):
    get_company(company_id)
    return (TaxRate.query.filter_by(company_id=company_id)
            .order_by(TaxRate.is_default.desc(), TaxRate.name).all())


def get_default_tax_rate(company_id):
    tax_rate = TaxRate.query.filter_by(company_id=company_id, is_default=True).first()
    return tax_rate.rate if tax_rate else None


def _clear_default(company_id, keep_id=None):
    for other in TaxRate.query.filter_by(company_id=company_id, is_default=True).all():
        if other.id != keep_id:
            other.is_default = False


def add_tax_rate(company_id, data):
    with atomic():
        get_company(company_id)
        tax_rate = TaxRate(
            company_id=company_id,
            name=_required_text(data, 'name'),
            rate=_percentage(data.get('rate'), 'rate'),
            is_default=bool(data.get('is_default', False)),
        )
        if tax_rate.is_default:
            _clear_default(company_id)
        db.session.add(tax_rate)
    return tax_rate


def update_tax_rate(tax_rate_id, data):
    with atomic():
        tax_rate = _get_owned(TaxRate, tax_rate_id, label='Tax rate')
        if 'name' in data:
            tax_rate.name = _required_text(data, 'name')
        if 'rate' in data:
            tax_rate.rate = _percentage(data['rate'], 'rate')
        if 'is_default' in data:
            tax_rate.is_default = bool(data['is_default'])
            if tax_rate.is_default:
                _clear_default(tax_rate.company_id, keep_id=tax_rate.id)
    return tax_rate


def delete_tax_rate(tax_rate_id):
    with atomic():
        db.session.delete(_get_owned(TaxRate, tax_rate_id, label='Tax rate'))


def serialize_tax_rate(tax_rate):
    return {
        'id': tax_rate.id,
        'company_id': tax_rate.company_id,
        'name': tax_rate.name,
        'rate': str(tax_rate.rate),
        'is_default': tax_rate.is_default,
    }


# ------------------------------------------------------------------
# Clients
# ------------------------------------------------------------------

def add_client(company_id, data):
    with atomic():
        get_company(company_id)
        client = Client(company_id=company_id, name=_required_text(data, 'name'))
        for key in CLIENT_FIELDS:
            if key != 'name' and key in data:
                setattr(client, key, data[key])
        db.session.add(client)
    logger.info("Added client %s to company %s", client.id, company_id)
    return client


def get_clients(company_id):
    get_company(company_id)
    return (Client.query.filter_by(company_id=company_id)
            .order_by(Client.created_at.desc(), Client.id.desc()).all())


def get_client(client_id, company_id=None):
    return _get_owned(Client, client_id, company_id, label='Client')


def update_client(client_id, data):
    with atomic():
        client = get_client(client_id)
        for key in CLIENT_FIELDS:
            if key in data:
                setattr(client, key, _required_text(data, key) if key == 'name' else data[key])
    return client


def delete_client(client_id):
    with atomic():
        client = get_client(client_id)
        if client.quotes or client.invoices:
            raise ValidationError("Client has quotes or invoices and cannot be deleted")
        db.session.delete(client)
    logger.info("Deleted client %s", client_id)


def serialize_client(client):
    data = {key: getattr(client, key) for key in CLIENT_FIELDS}
    data['id'] = client.id
    data['company_id'] = client.company_id
    data['created_at'] = client.created_at.isoformat() if client.created_at else None
    return data


# ------------------------------------------------------------------
# Products
# ------------------------------------------------------------------

def _apply_product_fields(product, data):
    if 'name' in data:
        product.name = _required_text(data, 'name')
    if 'description' in data:
        product.description = data['description']
    if 'unit_price' in data:
        price = to_decimal(data['unit_price'], 'unit_price')
        if price < 0:
            raise ValidationError("unit_price must not be negative")
        product.unit_price = round_money(price)
    if 'tax_rate' in data:
        product.tax_rate = _percentage(data['tax_rate'])
    if 'is_active' in data:
        product.is_active = bool(data['is_active'])


def add_product(company_id, data):
    with atomic():
        get_company(company_id)
        product = Product(company_id=company_id, name=_required_text(data, 'name'))
        _apply_product_fields(product, data)
        db.session.add(product)
    return product


def get_products(company_id, include_inactive=False):
    get_company(company_id)
    query = Product.query.filter_by(company_id=company_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(Product.name.asc()).all()


def get_product(product_id, company_id=None):
    return _get_owned(Product, product_id, company_id, label='Product')


def update_product(product_id, data):
    with atomic():
        product = get_product(product_id)
        _apply_product_fields(product, data)
    return product


def delete_product(product_id):
    # Line items keep their copied description/price, product_id is only a soft link
    with atomic():
        db.session.delete(get_product(product_id))


def serialize_product(product):
    return {
        'id': product.id,
        'company_id': product.company_id,
        'name': product.name,
        'description': product.description,
        'unit_price': format_amount(product.unit_price),
        'tax_rate': str(product.tax_rate),
        'is_active': product.is_active,
    }


# ------------------------------------------------------------------
# Dashboard
# ------------------------------------------------------------------

def _month_starts(today, count):
    months = []
    for back in range(count - 1, -1, -1):
        year, month = divmod(today.year * 12 + today.month - 1 - back, 12)
        months.append(date(year, month + 1, 1))
    return months


def get_dashboard(company_id, today=None):
    company = get_company(company_id)
    today = today or date.today()

    invoices = Invoice.query.filter_by(company_id=company.id).all()
    paid = [inv for inv in invoices if inv.status == 'paid']
    outstanding = [inv for inv in invoices if inv.status in ('unpaid', 'overdue')]
    month_start = today.replace(day=1)

    revenue = []
    for start in _month_starts(today, 6):
        amount = sum((inv.total for inv in paid
                      if inv.date.year == start.year and inv.date.month == start.month), ZERO)
        revenue.append({'month': start.strftime('%Y-%m'), 'revenue': format_amount(amount)})

    recent_invoices = sorted(invoices, key=lambda inv: (inv.date, inv.id), reverse=True)[:5]
    recent_quotes = (Quote.query.filter_by(company_id=company.id)
                     .order_by(Quote.date.desc(), Quote.id.desc()).limit(5).all())

    return {
        'total_revenue': format_amount(sum((inv.total for inv in paid), ZERO)),
        'outstanding_amount': format_amount(sum((inv.balance for inv in outstanding), ZERO)),
        'pending_quotes': Quote.query.filter_by(company_id=company.id, status='sent').count(),
        'paid_this_month': format_amount(sum((inv.total for inv in paid if inv.date >= month_start), ZERO)),
        'revenue_by_month': revenue,
        'recent_invoices': [
            {
                'id': inv.id,
                'invoice_number': inv.invoice_number,
                'client_name': inv.client.name if inv.client else None,
                'date': format_date(inv.date),
                'status': inv.status,
                'total': format_amount(inv.total),
            }
            for inv in recent_invoices
        ],
        'recent_quotes': [
            {
                'id': q.id,
                'quote_number': q.quote_number,
                'client_name': q.client.name if q.client else None,
                'date': format_date(q.date),
                'status': q.status,
                'total': format_amount(q.total),
            }
            for q in recent_quotes
        ],
    }
