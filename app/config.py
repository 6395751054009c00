import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == '':
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or (
        'dev-secret-key-change-in-production'
    )
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or (
        'sqlite:///marketplace.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging. Empty string disables the file handler.
    LOG_FILE = os.environ.get('LOG_FILE', 'app.log')
    MAJOR_EVENTS_LOG_FILE = os.environ.get(
        'MAJOR_EVENTS_LOG_FILE', 'major_events.log')

    # Marketplace commission in basis points (200 = 2%).
    COMMISSION_RATE_BPS = _int_env('COMMISSION_RATE_BPS', 200)

    # Days a credited seller amount stays pending before release.
    SETTLEMENT_HOLD_DAYS = _int_env('SETTLEMENT_HOLD_DAYS', 7)

    # Grace period before shipped orders are promoted to delivered.
    # Unset means the promotion job only runs with an explicit --grace-days.
    DELIVERY_GRACE_DAYS = (
        int(os.environ['DELIVERY_GRACE_DAYS'])
        if os.environ.get('DELIVERY_GRACE_DAYS') else None
    )

    # After-sale submission rules
    AFTER_SALE_MIN_DESCRIPTION_LENGTH = 20
    AFTER_SALE_MIN_RESPONSE_LENGTH = 10
    AFTER_SALE_MAX_IMAGES = 5
    AFTER_SALE_MAX_VIDEO_BYTES = 50 * 1024 * 1024
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.abspath(
        os.path.join(os.path.dirname(__file__), '..', 'uploads'))
    # Flask rejects bodies above this (video cap + 5 images + form fields).
    MAX_CONTENT_LENGTH = 80 * 1024 * 1024

    # Shipping
    TRACKING_NUMBER_PREFIX = 'CC'
    TRACKING_NUMBER_MAX_ATTEMPTS = 10
    TRACKING_RATE_LIMIT = _int_env('TRACKING_RATE_LIMIT', 30)
    TRACKING_RATE_WINDOW_SECONDS = _int_env('TRACKING_RATE_WINDOW_SECONDS', 60)

    # Outbox dispatch
    OUTBOX_MAX_ATTEMPTS = 8
    OUTBOX_BASE_DELAY_SECONDS = 30
    # Try each queued action right after the unit that queued it commits;
    # `flask dispatch-outbox` picks up whatever is left.
    OUTBOX_DISPATCH_ON_COMMIT = True

    # Shared secret the payment service sends with status callbacks
    PAYMENT_CALLBACK_TOKEN = os.environ.get('PAYMENT_CALLBACK_TOKEN', '')

    # Retries of a whole unit of work after an optimistic-lock conflict
    STALE_RETRY_ATTEMPTS = 3


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_FILE = ''
    MAJOR_EVENTS_LOG_FILE = ''
    COMMISSION_RATE_BPS = 1000
    PAYMENT_CALLBACK_TOKEN = 'test-payment-token'
    TRACKING_RATE_LIMIT = 1000
    OUTBOX_DISPATCH_ON_COMMIT = False
