import itertools

import pytest

from config import TestConfig
from walletcore import create_app
from walletcore.extensions import db
from walletcore.services.ledger_service import create_user, create_wallet, fund_wallet, get_wallet


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def make_user(app):
    """Factory: registered user, with a (funded) wallet unless told otherwise."""
    counter = itertools.count(1)

    def _make_user(name=None, balance=None, with_wallet=True):
        n = next(counter)
        user = create_user(name or f"User {n}", f"user{n}@example.com")
        if with_wallet:
            create_wallet(user.id)
            if balance:
                fund_wallet(user.id, balance)
        return user

    return _make_user


@pytest.fixture
def balance_of(app):
    def _balance_of(user_id):
        db.session.expire_all()
        return get_wallet(user_id).balance

    return _balance_of


@pytest.fixture
def job(app):
    return app.extensions['scheduled_transfer_job']
