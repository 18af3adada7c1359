import os
from decimal import Decimal

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here-make-it-long'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'wallet_core.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'NGN')

    # Per-transaction and rolling daily limits for wallet-to-wallet transfers
    TRANSFER_MIN_AMOUNT = Decimal(os.environ.get('TRANSFER_MIN_AMOUNT', '100'))
    TRANSFER_MAX_AMOUNT = Decimal(os.environ.get('TRANSFER_MAX_AMOUNT', '1000000'))
    TRANSFER_DAILY_LIMIT = Decimal(os.environ.get('TRANSFER_DAILY_LIMIT', '5000000'))
    VERIFICATION_CODE_LENGTH = 6

    SAVINGS_MIN_CONTRIBUTION = Decimal(os.environ.get('SAVINGS_MIN_CONTRIBUTION', '100'))

    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'false').lower() == 'true'
    SCHEDULER_INTERVAL_MINUTES = int(os.environ.get('SCHEDULER_INTERVAL_MINUTES', '60'))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SCHEDULER_ENABLED = False
    LOG_LEVEL = 'DEBUG'
