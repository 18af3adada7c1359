"""
LEDGER SERVICE - WALLET BALANCES AND TRANSACTION LOG
====================================================

CRITICAL BUSINESS RULES:
1. Wallet balance ONLY changes via debit_wallet / credit_wallet
2. Every balance change is committed together with its Transaction row
3. A debit is a conditional decrement: it never takes a balance below zero
4. Transaction references are globally unique
5. After creation a Transaction may only move pending -> completed | failed
"""

import logging
import secrets
import string
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func

from walletcore.extensions import db
from walletcore.models import (
    User, Wallet, Transaction, TransactionType, TransactionStatus, Direction, utcnow
)
from walletcore.signals import transaction_completed
from walletcore.types import CENTS

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class ValidationError(LedgerError):
    """Raised when input is invalid (amount, field, frequency, code)"""
    pass


class InsufficientFundsError(LedgerError):
    """Raised when a wallet or pool balance cannot cover a debit"""
    pass


class NotFoundError(LedgerError):
    """Raised when a wallet, user, transaction or group does not exist"""
    pass


class ConflictError(LedgerError):
    """Raised when an operation was already applied or clashes with state"""
    pass


class PermissionDeniedError(LedgerError):
    """Raised when the caller may not act on the resource"""
    pass


class IntegrityFailure(LedgerError):
    """Raised when a storage error interrupted a unit; the unit was rolled back"""
    pass


# ============================================================
# UNIT OF WORK
# ============================================================

@contextmanager
def atomic_unit(operation):
    """
    Run a balance + log mutation as one commit.

    Business errors are re-raised as they are; anything else is wrapped in
    IntegrityFailure. Either way nothing from the unit survives.
    """
    try:
        yield db.session
        db.session.commit()
    except LedgerError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        logger.exception("%s failed, rolled back", operation)
        raise IntegrityFailure(f"{operation} failed: {e}") from e


# ============================================================
# HELPERS
# ============================================================

def to_amount(value, field='amount'):
    """Parse a money value into a positive Decimal with cent precision."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return amount


def generate_reference(prefix='PP'):
    """Transaction reference: PP-YYYYMMDD-XXXXXXXX"""
    date_str = utcnow().strftime('%Y%m%d')
    suffix = ''.join(secrets.choice(REFERENCE_ALPHABET) for _ in range(8))
    return f"{prefix}-{date_str}-{suffix}"


def generate_unique_reference(prefix='PP'):
    reference = generate_reference(prefix)
    while Transaction.query.filter_by(reference=reference).first() is not None:
        reference = generate_reference(prefix)
    return reference


def generate_invite_code(model, length=8):
    """Unique uppercase invite code for a circle or group model."""
    while True:
        code = ''.join(secrets.choice(REFERENCE_ALPHABET) for _ in range(length))
        if model.query.filter_by(invite_code=code).first() is None:
            return code


# ============================================================
# USER DIRECTORY
# ============================================================

def create_user(name, email):
    if not name or not email:
        raise ValidationError("Name and email are required")
    email = email.strip().lower()
    with atomic_unit("create user"):
        if User.query.filter_by(email=email).first():
            raise ConflictError(f"Email {email} already registered")
        user = User(name=name.strip(), email=email)
        db.session.add(user)
    return user


def find_user_by_email(email):
    if not email:
        return None
    return User.query.filter_by(email=email.strip().lower()).first()


def find_user_by_id(user_id):
    if user_id is None:
        return None
    return db.session.get(User, user_id)


# ============================================================
# WALLET STORE
# ============================================================

def create_wallet(user_id, currency=None):
    """Create the (single) wallet for a user."""
    currency = currency or current_app.config.get('DEFAULT_CURRENCY', 'NGN')
    with atomic_unit("create wallet"):
        if not find_user_by_id(user_id):
            raise NotFoundError(f"User {user_id} not found")
        if Wallet.query.filter_by(user_id=user_id).first():
            raise ConflictError(f"User {user_id} already has a wallet")
        wallet = Wallet(user_id=user_id, balance=Decimal('0.00'), currency=currency)
        db.session.add(wallet)
    return wallet


def get_wallet_or_none(user_id, lock=False):
    query = Wallet.query.filter_by(user_id=user_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def get_wallet(user_id, lock=False):
    wallet = get_wallet_or_none(user_id, lock=lock)
    if not wallet:
        raise NotFoundError("Wallet not found")
    return wallet


def debit_wallet(wallet, amount):
    """
    Conditionally decrement a wallet balance.

    The balance check and the write are one UPDATE statement, so two
    concurrent debits on the same wallet cannot both pass the check.
    Does NOT commit.
    """
    if not wallet.is_active:
        raise ConflictError("Wallet is not active")

    updated = db.session.query(Wallet).filter(
        Wallet.id == wallet.id,
        Wallet.balance >= amount,
    ).update({Wallet.balance: Wallet.balance - amount}, synchronize_session='fetch')

    if updated != 1:
        raise InsufficientFundsError(
            f"Insufficient balance. Required: {amount}, Available: {wallet.balance}"
        )
    return wallet


def credit_wallet(wallet, amount):
    """Increment a wallet balance. Does NOT commit."""
    if not wallet.is_active:
        raise ConflictError("Wallet is not active")

    db.session.query(Wallet).filter(Wallet.id == wallet.id).update(
        {Wallet.balance: Wallet.balance + amount}, synchronize_session='fetch'
    )
    return wallet


# ============================================================
# TRANSACTION LOG
# ============================================================

def record_transaction(user_id, type, amount, direction, wallet=None, reference=None,
                       status=TransactionStatus.COMPLETED.value, description=None,
                       metadata=None, currency=None):
    """Append a Transaction row. Does NOT commit."""
    reference = reference or generate_unique_reference()
    if Transaction.query.filter_by(reference=reference).first():
        raise ConflictError(f"Transaction reference {reference} already exists")

    transaction = Transaction(
        user_id=user_id,
        wallet_id=wallet.id if wallet else None,
        type=type,
        direction=direction,
        amount=amount,
        currency=currency or (wallet.currency if wallet else 'NGN'),
        reference=reference,
        status=status,
        description=description,
        meta=dict(metadata or {}),
        completed_at=utcnow() if status == TransactionStatus.COMPLETED.value else None,
    )
    db.session.add(transaction)
    db.session.flush()
    return transaction


def get_transaction(reference, user_id=None):
    query = Transaction.query.filter_by(reference=reference)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    transaction = query.first()
    if not transaction:
        raise NotFoundError("Transaction not found")
    return transaction


# ============================================================
# FUNDING
# ============================================================

def fund_wallet(user_id, amount, reference=None, description=None, metadata=None):
    """
    Credit a wallet from an external funding source.

    Returns: (Wallet, Transaction)
    """
    amount = to_amount(amount)

    with atomic_unit("wallet funding"):
        wallet = get_wallet(user_id, lock=True)
        credit_wallet(wallet, amount)
        transaction = record_transaction(
            user_id=user_id,
            wallet=wallet,
            type=TransactionType.FUNDING.value,
            direction=Direction.CREDIT.value,
            amount=amount,
            reference=reference,
            description=description or "Wallet funding",
            metadata=metadata,
        )

    logger.info("Funded wallet %s with %s (%s)", wallet.id, amount, transaction.reference)

    transaction_completed.send(transaction)
    return wallet, transaction


# ============================================================
# HISTORY & SUMMARY
# ============================================================

def get_transaction_history(user_id, type=None, status=None, start_date=None, end_date=None,
                            page=1, limit=10, sort_order='desc'):
    """Paginated transaction history for one user."""
    page = max(int(page), 1)
    limit = max(int(limit), 1)

    query = Transaction.query.filter_by(user_id=user_id)
    if type:
        query = query.filter_by(type=type)
    if status:
        query = query.filter_by(status=status)
    if start_date:
        query = query.filter(Transaction.created_at >= start_date)
    if end_date:
        query = query.filter(Transaction.created_at <= end_date)

    total = query.count()

    ordering = Transaction.created_at.asc() if sort_order == 'asc' else Transaction.created_at.desc()
    transactions = query.order_by(ordering, Transaction.id).offset((page - 1) * limit).limit(limit).all()

    total_pages = (total + limit - 1) // limit
    return {
        'transactions': transactions,
        'pagination': {
            'total': total,
            'total_pages': total_pages,
            'current_page': page,
            'limit': limit,
            'has_next_page': page < total_pages,
            'has_prev_page': page > 1,
        }
    }


def _period_start(period, now):
    if period == 'today':
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == 'week':
        start = now - timedelta(days=now.weekday())
        return start.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == 'month':
        return datetime(now.year, now.month, 1)
    if period == 'year':
        return datetime(now.year, 1, 1)
    if period == 'all':
        return None
    raise ValidationError(f"Invalid period: {period}")


def get_transaction_summary(user_id, period='all', now=None):
    """Counts by type/status and completed totals for funding, withdrawal and transfer."""
    start = _period_start(period, now or utcnow())

    base = Transaction.query.filter_by(user_id=user_id)
    if start is not None:
        base = base.filter(Transaction.created_at >= start)

    def count(**filters):
        return base.filter_by(**filters).count()

    def completed_total(tx_type, direction=None):
        query = base.filter_by(type=tx_type, status=TransactionStatus.COMPLETED.value)
        if direction:
            query = query.filter_by(direction=direction)
        total = query.with_entities(func.sum(Transaction.amount)).scalar()
        return total if total is not None else Decimal('0.00')

    funding = completed_total(TransactionType.FUNDING.value)
    withdrawal = completed_total(TransactionType.WITHDRAWAL.value)
    transfer_out = completed_total(TransactionType.TRANSFER.value, Direction.DEBIT.value)

    counts = {
        'funding': count(type=TransactionType.FUNDING.value),
        'withdrawal': count(type=TransactionType.WITHDRAWAL.value),
        'transfer': count(type=TransactionType.TRANSFER.value),
        'pending': count(status=TransactionStatus.PENDING.value),
        'completed': count(status=TransactionStatus.COMPLETED.value),
        'failed': count(status=TransactionStatus.FAILED.value),
    }
    counts['total'] = counts['funding'] + counts['withdrawal'] + counts['transfer']

    return {
        'counts': counts,
        'amounts': {
            'funding': funding,
            'withdrawal': withdrawal,
            'transfer': transfer_out,
            'net': funding - withdrawal - transfer_out,
        },
        'period': period,
    }


# ============================================================
# BALANCE RECONCILIATION (AUDIT)
# ============================================================

def reconcile_wallet_balance(wallet_id):
    """Recalculate a wallet balance from its completed ledger entries."""
    wallet = db.session.get(Wallet, wallet_id)
    if not wallet:
        raise NotFoundError(f"Wallet {wallet_id} not found")

    entries = Transaction.query.filter_by(
        wallet_id=wallet_id,
        status=TransactionStatus.COMPLETED.value
    ).all()

    credits = sum((t.amount for t in entries if t.direction == Direction.CREDIT.value), Decimal('0'))
    debits = sum((t.amount for t in entries if t.direction == Direction.DEBIT.value), Decimal('0'))
    calculated_balance = (credits - debits).quantize(CENTS)

    previous_balance = wallet.balance
    difference = calculated_balance - previous_balance

    was_corrected = False
    if abs(difference) > CENTS:
        if calculated_balance < 0:
            raise IntegrityFailure(
                f"Ledger for wallet {wallet_id} sums to a negative balance {calculated_balance}"
            )
        logger.warning("Wallet %s drifted by %s, correcting", wallet_id, difference)
        with atomic_unit("wallet reconciliation"):
            wallet.balance = calculated_balance
        was_corrected = True

    return {
        'wallet_id': wallet_id,
        'previous_balance': previous_balance,
        'calculated_balance': calculated_balance,
        'difference': difference,
        'was_corrected': was_corrected,
        'total_credits': credits,
        'total_debits': debits,
    }
