"""
Tests for the ledger store

Covers:
1. Conditional debit guard
2. Funding and reference format
3. Unit of work rollback
4. History, summary and reconciliation
"""

import re
from decimal import Decimal

import pytest
from sqlalchemy import text

from walletcore.extensions import db
from walletcore.models import Transaction, Wallet, TransactionType, Direction
from walletcore.services.ledger_service import (
    atomic_unit, to_amount, create_user, create_wallet, get_wallet, debit_wallet, credit_wallet,
    fund_wallet, record_transaction, get_transaction, get_transaction_history,
    get_transaction_summary, reconcile_wallet_balance, generate_reference,
    ValidationError, InsufficientFundsError, NotFoundError, ConflictError, IntegrityFailure
)


class TestAmounts:

    @pytest.mark.parametrize("value", [None, 0, -5, "abc", "NaN", True])
    def test_rejects_invalid_amounts(self, value):
        with pytest.raises(ValidationError):
            to_amount(value)

    def test_rounds_to_cents(self):
        assert to_amount("10.005") == Decimal("10.01")
        assert to_amount(250) == Decimal("250.00")


class TestWalletStore:

    def test_create_user_rejects_duplicate_email(self, app):
        create_user("Ada", "ada@example.com")
        with pytest.raises(ConflictError):
            create_user("Ada Again", "ADA@example.com")

    def test_one_wallet_per_user(self, make_user):
        user = make_user()
        with pytest.raises(ConflictError):
            create_wallet(user.id)

    def test_missing_wallet(self, make_user):
        user = make_user(with_wallet=False)
        with pytest.raises(NotFoundError):
            get_wallet(user.id)

    def test_debit_never_goes_negative(self, make_user, balance_of):
        """A debit larger than the balance changes nothing."""
        user = make_user(balance=500)
        wallet = get_wallet(user.id)

        with pytest.raises(InsufficientFundsError):
            with atomic_unit("test debit"):
                debit_wallet(wallet, Decimal("500.01"))

        assert balance_of(user.id) == Decimal("500.00")

    def test_debit_exact_balance(self, make_user, balance_of):
        user = make_user(balance=500)
        with atomic_unit("test debit"):
            debit_wallet(get_wallet(user.id), Decimal("500.00"))
        assert balance_of(user.id) == Decimal("0.00")

    def test_debit_exact_balance_built_from_fundings(self, make_user, balance_of):
        """Balances are exact cents, so a summed balance can be spent to zero."""
        user = make_user()
        fund_wallet(user.id, "0.70")
        fund_wallet(user.id, "0.10")

        stored = db.session.execute(
            text("SELECT balance FROM wallets WHERE user_id = :user_id"), {'user_id': user.id}
        ).scalar()
        assert stored == 80

        with atomic_unit("test debit"):
            debit_wallet(get_wallet(user.id), Decimal("0.80"))
        assert balance_of(user.id) == Decimal("0.00")

    def test_inactive_wallet_rejects_movement(self, make_user):
        user = make_user(balance=500)
        wallet = get_wallet(user.id)
        wallet.is_active = False
        db.session.commit()

        with pytest.raises(ConflictError):
            debit_wallet(wallet, Decimal("10"))
        with pytest.raises(ConflictError):
            credit_wallet(wallet, Decimal("10"))


class TestFunding:

    def test_fund_wallet_records_completed_credit(self, make_user, balance_of):
        user = make_user()
        wallet, transaction = fund_wallet(user.id, "1500")

        assert balance_of(user.id) == Decimal("1500.00")
        assert transaction.type == TransactionType.FUNDING.value
        assert transaction.direction == Direction.CREDIT.value
        assert transaction.status == "completed"
        assert re.fullmatch(r"PP-\d{8}-[A-Z0-9]{8}", transaction.reference)

    def test_generate_reference_prefix(self):
        assert re.fullmatch(r"RDM-\d{8}-[A-Z0-9]{8}", generate_reference("RDM"))

    def test_duplicate_reference_rejected(self, make_user, balance_of):
        user = make_user()
        fund_wallet(user.id, 100, reference="EXT-1")

        with pytest.raises(ConflictError):
            fund_wallet(user.id, 100, reference="EXT-1")

        assert balance_of(user.id) == Decimal("100.00")
        assert Transaction.query.filter_by(user_id=user.id).count() == 1

    def test_get_transaction_scoped_to_user(self, make_user):
        owner = make_user()
        other = make_user()
        _, transaction = fund_wallet(owner.id, 100)

        assert get_transaction(transaction.reference, owner.id).id == transaction.id
        with pytest.raises(NotFoundError):
            get_transaction(transaction.reference, other.id)


class TestAtomicUnit:

    def test_unexpected_error_rolls_back_and_wraps(self, make_user, balance_of):
        """Storage-level failures surface as IntegrityFailure with nothing persisted."""
        user = make_user(balance=100)

        with pytest.raises(IntegrityFailure) as excinfo:
            with atomic_unit("broken unit"):
                wallet = get_wallet(user.id)
                credit_wallet(wallet, Decimal("50"))
                record_transaction(user.id, TransactionType.FUNDING.value, Decimal("50"),
                                   Direction.CREDIT.value, wallet=wallet)
                raise RuntimeError("disk full")

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert balance_of(user.id) == Decimal("100.00")
        assert Transaction.query.filter_by(user_id=user.id).count() == 1

    def test_business_error_passes_through(self, app):
        with pytest.raises(NotFoundError):
            with atomic_unit("lookup"):
                raise NotFoundError("nope")


class TestHistoryAndSummary:

    def test_history_pagination(self, make_user):
        user = make_user()
        for amount in (100, 200, 300):
            fund_wallet(user.id, amount)

        page = get_transaction_history(user.id, page=1, limit=2)

        assert len(page['transactions']) == 2
        assert page['pagination']['total'] == 3
        assert page['pagination']['total_pages'] == 2
        assert page['pagination']['has_next_page'] is True
        assert page['pagination']['has_prev_page'] is False

        last = get_transaction_history(user.id, page=2, limit=2)
        assert len(last['transactions']) == 1
        assert last['pagination']['has_next_page'] is False

    def test_history_filters_by_type(self, make_user):
        user = make_user(balance=100)
        result = get_transaction_history(user.id, type=TransactionType.TRANSFER.value)
        assert result['transactions'] == []

    def test_summary(self, make_user):
        user = make_user()
        fund_wallet(user.id, 1000)
        fund_wallet(user.id, 500)

        summary = get_transaction_summary(user.id, period='today')

        assert summary['counts']['funding'] == 2
        assert summary['counts']['completed'] == 2
        assert summary['amounts']['funding'] == Decimal("1500.00")
        assert summary['amounts']['net'] == Decimal("1500.00")

    def test_summary_rejects_unknown_period(self, make_user):
        user = make_user()
        with pytest.raises(ValidationError):
            get_transaction_summary(user.id, period='decade')


class TestReconciliation:

    def test_consistent_wallet_untouched(self, make_user):
        user = make_user(balance=750)
        wallet = get_wallet(user.id)

        report = reconcile_wallet_balance(wallet.id)

        assert report['was_corrected'] is False
        assert report['calculated_balance'] == Decimal("750.00")

    def test_drift_is_corrected(self, make_user, balance_of):
        user = make_user(balance=750)
        wallet = get_wallet(user.id)
        db.session.query(Wallet).filter_by(id=wallet.id).update({Wallet.balance: Decimal("900")})
        db.session.commit()

        report = reconcile_wallet_balance(wallet.id)

        assert report['was_corrected'] is True
        assert report['difference'] == Decimal("-150.00")
        assert balance_of(user.id) == Decimal("750.00")
