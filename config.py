import os
import sys


def get_db_path():
    if getattr(sys, 'frozen', False):
        base_path = os.path.dirname(sys.executable)
        return os.path.join(base_path, 'data', 'invoices.db')
    # In production (Docker), use the mapped 'data' volume
    if os.environ.get('FLASK_ENV') == 'production':
        return os.path.join('/app', 'data', 'invoices.db')
    base_path = os.path.dirname(os.path.abspath(__file__))
    return os.path.join(base_path, 'data', 'invoices.db')


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{get_db_path()}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Days added to the document date when no explicit due date / validity is given
    INVOICE_DUE_DAYS = int(os.environ.get('INVOICE_DUE_DAYS', 30))
    QUOTE_VALID_DAYS = int(os.environ.get('QUOTE_VALID_DAYS', 30))

    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_API_ENABLED = False
    OVERDUE_CHECK_HOUR = int(os.environ.get('OVERDUE_CHECK_HOUR', 9))

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
