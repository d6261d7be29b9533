import io
import logging
import os

from flask import Flask, jsonify, request, send_file
from flask_apscheduler import APScheduler
from flask_cors import CORS
from flask_migrate import Migrate, upgrade

import db_manager
import documents
import ledger
import numbering
from config import Config
from errors import InvoicingError, ValidationError
from models import db
from pdf_builder import DocumentPDF

logger = logging.getLogger(__name__)

migrate = Migrate()
scheduler = APScheduler()


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _ensure_sqlite_dir(uri):
    if uri.startswith('sqlite:///') and not uri.endswith(':memory:'):
        directory = os.path.dirname(uri[len('sqlite:///'):])
        if directory:
            os.makedirs(directory, exist_ok=True)


def _init_database(app):
    # Apply migrations if they exist, otherwise create the tables directly
    migration_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')
    with app.app_context():
        if os.path.exists(migration_dir):
            try:
                upgrade(directory=migration_dir)
                logger.info("Database migrated successfully.")
            except Exception as e:
                logger.warning("Migration failed: %s. Attempting db.create_all() as fallback.", e)
                db.create_all()
        else:
            db.create_all()
            logger.info("Database tables created using db.create_all().")


def check_overdue_invoices():
    with scheduler.app.app_context():
        documents.mark_overdue_invoices()


def _start_scheduler(app):
    scheduler.init_app(app)
    # Run check daily, at OVERDUE_CHECK_HOUR
    scheduler.add_job(id='overdue_check', func=check_overdue_invoices, trigger='cron',
                      hour=app.config['OVERDUE_CHECK_HOUR'], replace_existing=True)
    scheduler.start()


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )

    _ensure_sqlite_dir(app.config['SQLALCHEMY_DATABASE_URI'])
    db.init_app(app)
    migrate.init_app(app, db)
    CORS(app)  # Enable CORS for all routes

    register_error_handlers(app)
    register_routes(app)
    _init_database(app)

    if app.config.get('SCHEDULER_ENABLED') and not scheduler.running:
        _start_scheduler(app)
    return app


def register_error_handlers(app):
    @app.errorhandler(InvoicingError)
    def handle_invoicing_error(e):
        if e.status_code >= 500:
            logger.error("%s: %s", e.__class__.__name__, e.message)
        return jsonify({'error': e.message}), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({'error': 'Not Found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({'error': 'Method Not Allowed'}), 405


def register_routes(app):

    # ---------------- Companies ---------------- #

    @app.route('/api/companies', methods=['POST'])
    def create_company():
        company = db_manager.create_company(_payload())
        return jsonify(db_manager.serialize_company(company)), 201

    @app.route('/api/companies/<int:company_id>', methods=['GET', 'PUT'])
    def manage_company(company_id):
        if request.method == 'PUT':
            company = db_manager.update_company(company_id, _payload())
        else:
            company = db_manager.get_company(company_id)
        return jsonify(db_manager.serialize_company(company))

    @app.route('/api/companies/<int:company_id>/tax-rates', methods=['GET', 'POST'])
    def tax_rates(company_id):
        if request.method == 'POST':
            tax_rate = db_manager.add_tax_rate(company_id, _payload())
            return jsonify(db_manager.serialize_tax_rate(tax_rate)), 201
        return jsonify([db_manager.serialize_tax_rate(t) for t in db_manager.get_tax_rates(company_id)])

    @app.route('/api/tax-rates/<int:tax_rate_id>', methods=['PUT', 'DELETE'])
    def manage_tax_rate(tax_rate_id):
        if request.method == 'DELETE':
            db_manager.delete_tax_rate(tax_rate_id)
            return jsonify({'message': 'Tax rate deleted successfully'})
        tax_rate = db_manager.update_tax_rate(tax_rate_id, _payload())
        return jsonify(db_manager.serialize_tax_rate(tax_rate))

    @app.route('/api/companies/<int:company_id>/next-number')
    def next_number(company_id):
        document_type = request.args.get('type', 'invoice')
        company = db_manager.get_company(company_id)
        value = numbering.peek_next_number(company_id, document_type)
        prefix = numbering.company_prefix(company, document_type)
        return jsonify({
            'type': document_type,
            'next_number': value,
            'formatted': numbering.format_number(prefix, value, company.number_padding),
        })

    @app.route('/api/companies/<int:company_id>/dashboard')
    def dashboard(company_id):
        return jsonify(db_manager.get_dashboard(company_id))

    # ---------------- Clients ---------------- #

    @app.route('/api/companies/<int:company_id>/clients', methods=['GET', 'POST'])
    def clients(company_id):
        if request.method == 'POST':
            client = db_manager.add_client(company_id, _payload())
            return jsonify(db_manager.serialize_client(client)), 201
        return jsonify([db_manager.serialize_client(c) for c in db_manager.get_clients(company_id)])

    @app.route('/api/clients/<int:client_id>', methods=['GET', 'PUT', 'DELETE'])
    def manage_client(client_id):
        if request.method == 'DELETE':
            db_manager.delete_client(client_id)
            return jsonify({'message': 'Client deleted successfully'})
        if request.method == 'PUT':
            client = db_manager.update_client(client_id, _payload())
        else:
            client = db_manager.get_client(client_id)
        return jsonify(db_manager.serialize_client(client))

    # ---------------- Products ---------------- #

    @app.route('/api/companies/<int:company_id>/products', methods=['GET', 'POST'])
    def products(company_id):
        if request.method == 'POST':
            product = db_manager.add_product(company_id, _payload())
            return jsonify(db_manager.serialize_product(product)), 201
        include_inactive = request.args.get('include_inactive', 'false').lower() == 'true'
        return jsonify([db_manager.serialize_product(p)
                        for p in db_manager.get_products(company_id, include_inactive)])

    @app.route('/api/products/<int:product_id>', methods=['GET', 'PUT', 'DELETE'])
    def manage_product(product_id):
        if request.method == 'DELETE':
            db_manager.delete_product(product_id)
            return jsonify({'message': 'Product deleted successfully'})
        if request.method == 'PUT':
            product = db_manager.update_product(product_id, _payload())
        else:
            product = db_manager.get_product(product_id)
        return jsonify(db_manager.serialize_product(product))

    # ---------------- Quotes ---------------- #

    @app.route('/api/companies/<int:company_id>/quotes', methods=['GET', 'POST'])
    def quotes(company_id):
        if request.method == 'POST':
            data = _payload()
            items = data.pop('items', [])
            quote = documents.create_quote(company_id, data, items)
            return jsonify(documents.serialize_quote(quote)), 201
        found = documents.list_quotes(company_id, status=request.args.get('status'),
                                      client_id=request.args.get('client_id', type=int))
        return jsonify([documents.serialize_quote(q) for q in found])

    @app.route('/api/quotes/<int:quote_id>', methods=['GET', 'PUT', 'DELETE'])
    def manage_quote(quote_id):
        if request.method == 'DELETE':
            documents.delete_quote(quote_id)
            return jsonify({'message': 'Quote deleted successfully'})
        if request.method == 'PUT':
            data = _payload()
            quote = documents.update_quote(quote_id, data, data.pop('items', None))
        else:
            quote = documents.get_quote(quote_id)
        return jsonify(documents.serialize_quote(quote))

    @app.route('/api/quotes/<int:quote_id>/convert', methods=['POST'])
    def convert_quote(quote_id):
        invoice = documents.convert_quote_to_invoice(quote_id, _payload().get('date'))
        return jsonify(documents.serialize_invoice(invoice)), 201

    @app.route('/api/quotes/<int:quote_id>/pdf')
    def quote_pdf(quote_id):
        quote = documents.get_quote(quote_id)
        company = db_manager.get_company(quote.company_id)
        return _send_pdf(DocumentPDF(documents.serialize_quote(quote), db_manager.serialize_company(company), 'quote'),
                         quote.quote_number)

    # ---------------- Invoices ---------------- #

    @app.route('/api/companies/<int:company_id>/invoices', methods=['GET', 'POST'])
    def invoices(company_id):
        if request.method == 'POST':
            data = _payload()
            items = data.pop('items', [])
            invoice = documents.create_invoice(company_id, data, items)
            return jsonify(documents.serialize_invoice(invoice)), 201
        found = documents.list_invoices(company_id, status=request.args.get('status'),
                                        client_id=request.args.get('client_id', type=int))
        return jsonify([documents.serialize_invoice(inv) for inv in found])

    @app.route('/api/invoices/<int:invoice_id>', methods=['GET', 'PUT', 'DELETE'])
    def manage_invoice(invoice_id):
        if request.method == 'DELETE':
            documents.delete_invoice(invoice_id)
            return jsonify({'message': 'Invoice deleted successfully'})
        if request.method == 'PUT':
            data = _payload()
            invoice = documents.update_invoice(invoice_id, data, data.pop('items', None))
        else:
            invoice = documents.get_invoice(invoice_id)
        return jsonify(documents.serialize_invoice(invoice))

    @app.route('/api/invoices/<int:invoice_id>/payments', methods=['GET', 'POST'])
    def payments(invoice_id):
        if request.method == 'POST':
            data = _payload()
            payment = ledger.add_payment(
                invoice_id,
                data.get('amount'),
                payment_date=data.get('date'),
                method=data.get('method'),
                reference=data.get('reference'),
                notes=data.get('notes'),
            )
            return jsonify({
                'payment': ledger.serialize_payment(payment),
                'invoice': documents.serialize_invoice(documents.get_invoice(invoice_id)),
            }), 201
        return jsonify([ledger.serialize_payment(p) for p in ledger.list_payments(invoice_id)])

    @app.route('/api/invoices/<int:invoice_id>/pdf')
    def invoice_pdf(invoice_id):
        invoice = documents.get_invoice(invoice_id)
        company = db_manager.get_company(invoice.company_id)
        return _send_pdf(DocumentPDF(documents.serialize_invoice(invoice), db_manager.serialize_company(company), 'invoice'),
                         invoice.invoice_number)


def _send_pdf(pdf, number):
    mem = io.BytesIO()
    pdf.generate(mem)
    mem.seek(0)
    return send_file(mem, mimetype='application/pdf', as_attachment=True, download_name=f"{number}.pdf")


if __name__ == '__main__':
    create_app().run(debug=False, port=int(os.environ.get('PORT', 5000)))
