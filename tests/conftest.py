import threading

import pytest

import db_manager
from app import create_app
from errors import InvoicingError
from models import db


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SCHEDULER_ENABLED': False,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def company(app):
    return db_manager.create_company({
        'name': 'Atelier Dupont',
        'email': 'contact@dupont.example',
        'city': 'Lyon',
        'bank_iban': 'FR7630006000011234567890189',
    })


@pytest.fixture
def client(company):
    return db_manager.add_client(company.id, {'name': 'Acme SARL', 'email': 'billing@acme.example'})


@pytest.fixture
def items():
    return [
        {'description': 'Design work', 'quantity': 2, 'unit_price': '100.00', 'tax_rate': 20},
        {'description': 'Hosting', 'quantity': 1, 'unit_price': '50.00', 'tax_rate': 10},
    ]


@pytest.fixture
def file_app(tmp_path):
    """App over a database file, so that several threads get their own connections."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'invoices.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 30}},
        'SCHEDULER_ENABLED': False,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def run_concurrently():
    """Run work() in `count` threads released together, each inside its own app context."""
    def run(app, count, work):
        barrier = threading.Barrier(count)
        results, errors = [], []

        def target():
            with app.app_context():
                barrier.wait()
                try:
                    results.append(work())
                except InvoicingError as e:
                    errors.append(e)

        threads = [threading.Thread(target=target) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results, errors
    return run
