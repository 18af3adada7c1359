"""
TRANSFER SERVICE - TWO-PHASE WALLET-TO-WALLET TRANSFERS
=======================================================

Phase 1 (initiate): validate limits and balance, create a PENDING
transaction carrying a one-time verification code. No funds move.

Phase 2 (verify): check the code, then debit the sender and credit the
recipient in one unit. Verifying a terminal transaction returns the
stored outcome without touching balances.

A recipient without a wallet does not block the transfer: the sender is
debited and no credit happens.
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from walletcore.extensions import db
from walletcore.models import Transaction, TransactionType, TransactionStatus, Direction, utcnow
from walletcore.services.ledger_service import (
    atomic_unit, to_amount, generate_unique_reference, get_wallet, get_wallet_or_none,
    debit_wallet, credit_wallet, record_transaction, find_user_by_email,
    ValidationError, NotFoundError, ConflictError, InsufficientFundsError, LedgerError
)
from walletcore.services import notification_service
from walletcore.signals import transaction_completed

logger = logging.getLogger(__name__)


class TransferAlreadyProcessed(ConflictError):
    """Raised when another verification already moved the transaction out of pending"""
    pass


# ============================================================
# LIMITS
# ============================================================

def start_of_local_day():
    """Local midnight expressed as naive UTC, matching stored timestamps."""
    local_now = datetime.now().astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def get_daily_transfer_total(user_id, since=None):
    """Sum of completed outgoing transfers since local midnight."""
    since = since or start_of_local_day()
    total = db.session.query(func.sum(Transaction.amount)).filter(
        Transaction.user_id == user_id,
        Transaction.type == TransactionType.TRANSFER.value,
        Transaction.direction == Direction.DEBIT.value,
        Transaction.status == TransactionStatus.COMPLETED.value,
        Transaction.completed_at >= since,
    ).scalar()
    return total if total is not None else Decimal('0.00')


def validate_transfer_amount(user_id, amount):
    config = current_app.config
    minimum = config['TRANSFER_MIN_AMOUNT']
    maximum = config['TRANSFER_MAX_AMOUNT']
    daily_limit = config['TRANSFER_DAILY_LIMIT']

    if amount < minimum:
        raise ValidationError(f"Minimum transfer amount is {minimum}")
    if amount > maximum:
        raise ValidationError(f"Maximum transfer amount is {maximum}")

    spent_today = get_daily_transfer_total(user_id)
    if spent_today + amount > daily_limit:
        raise ValidationError(
            f"Daily transfer limit of {daily_limit} exceeded. "
            f"Used today: {spent_today}, requested: {amount}"
        )


def generate_verification_code():
    length = current_app.config.get('VERIFICATION_CODE_LENGTH', 6)
    return ''.join(secrets.choice('0123456789') for _ in range(length))


# ============================================================
# FUND MOVEMENT (shared with scheduled transfers)
# ============================================================

def move_funds(sender_wallet, recipient, amount, reference, description, metadata=None,
               sender_transaction=None):
    """
    Debit the sender and credit the recipient wallet if there is one.

    Runs inside the caller's unit. When sender_transaction is given it is the
    already-claimed pending row for this transfer, otherwise a completed
    debit row is written here.

    Returns: (sender Transaction, recipient Transaction or None)
    """
    debit_wallet(sender_wallet, amount)

    recipient_wallet = get_wallet_or_none(recipient.id, lock=True) if recipient else None
    metadata = dict(metadata or {})
    metadata['recipient_credited'] = recipient_wallet is not None

    if sender_transaction is None:
        sender_transaction = record_transaction(
            user_id=sender_wallet.user_id,
            wallet=sender_wallet,
            type=TransactionType.TRANSFER.value,
            direction=Direction.DEBIT.value,
            amount=amount,
            reference=reference,
            description=description,
            metadata=metadata,
        )
    else:
        sender_transaction.meta = dict(sender_transaction.meta or {},
                                       recipient_credited=metadata['recipient_credited'])

    recipient_transaction = None
    if recipient_wallet is not None:
        credit_wallet(recipient_wallet, amount)
        recipient_transaction = record_transaction(
            user_id=recipient.id,
            wallet=recipient_wallet,
            type=TransactionType.TRANSFER.value,
            direction=Direction.CREDIT.value,
            amount=amount,
            reference=f"{sender_transaction.reference}-CR",
            description=description,
            metadata={
                'sender_id': sender_wallet.user_id,
                'source_reference': sender_transaction.reference,
            },
        )
    return sender_transaction, recipient_transaction


def announce_transfer(sender_transaction, recipient_transaction):
    """Emit completion events once the unit is committed."""
    transaction_completed.send(sender_transaction)
    notification_service.notify(
        user_id=sender_transaction.user_id,
        type=notification_service.TRANSFER,
        title="Transfer successful",
        message=f"You sent {sender_transaction.amount} {sender_transaction.currency}",
        reference=sender_transaction.reference,
    )

    if recipient_transaction is not None:
        transaction_completed.send(recipient_transaction)
        notification_service.notify(
            user_id=recipient_transaction.user_id,
            type=notification_service.TRANSFER,
            title="Money received",
            message=f"You received {recipient_transaction.amount} {recipient_transaction.currency}",
            reference=recipient_transaction.reference,
        )


# ============================================================
# INITIATE
# ============================================================

def initiate_transfer(sender_id, recipient_email, amount, description=None):
    """
    Create a pending transfer and its verification code.

    Returns: dict with reference and verification_code
    """
    if not recipient_email:
        raise ValidationError("Recipient email is required")
    amount = to_amount(amount)

    sender_wallet = get_wallet(sender_id)
    if not sender_wallet.is_active:
        raise ConflictError("Wallet is not active")

    recipient = find_user_by_email(recipient_email)
    if recipient is not None and recipient.id == sender_id:
        raise ValidationError("You cannot transfer to yourself")

    validate_transfer_amount(sender_id, amount)

    if sender_wallet.balance < amount:
        raise InsufficientFundsError(
            f"Insufficient balance. Required: {amount}, Available: {sender_wallet.balance}"
        )

    code = generate_verification_code()

    with atomic_unit("transfer initiation"):
        transaction = record_transaction(
            user_id=sender_id,
            wallet=sender_wallet,
            type=TransactionType.TRANSFER.value,
            direction=Direction.DEBIT.value,
            amount=amount,
            reference=generate_unique_reference(),
            status=TransactionStatus.PENDING.value,
            description=description or f"Transfer to {recipient_email}",
            metadata={
                'verification_code': code,
                'recipient_email': recipient_email.strip().lower(),
                'recipient_id': recipient.id if recipient else None,
            },
        )

    logger.info("Transfer %s initiated by user %s for %s", transaction.reference, sender_id, amount)

    notification_service.notify(
        user_id=sender_id,
        type=notification_service.SECURITY,
        title="Transfer verification code",
        message=f"Use {code} to confirm your transfer of {amount} {transaction.currency}",
        reference=transaction.reference,
    )

    return {
        'reference': transaction.reference,
        'verification_code': code,
        'status': transaction.status,
        'amount': amount,
    }


# ============================================================
# VERIFY
# ============================================================

def _terminal_result(transaction):
    wallet = get_wallet_or_none(transaction.user_id)
    return {
        'reference': transaction.reference,
        'status': transaction.status,
        'new_balance': wallet.balance if wallet else None,
        'already_processed': True,
    }


def _mark_failed(transaction_id, reason):
    with atomic_unit("transfer failure bookkeeping"):
        Transaction.query.filter_by(
            id=transaction_id,
            status=TransactionStatus.PENDING.value
        ).update({Transaction.status: TransactionStatus.FAILED.value},
                 synchronize_session='fetch')
    logger.warning("Transfer %s marked failed: %s", transaction_id, reason)


def _find_pending_transfer(reference):
    transaction = Transaction.query.filter_by(
        reference=reference,
        type=TransactionType.TRANSFER.value,
        direction=Direction.DEBIT.value,
    ).first()
    if not transaction:
        raise NotFoundError("Transaction not found")
    return transaction


def verify_transfer(reference, code):
    """
    Confirm a pending transfer with its verification code.

    Returns: dict with status and the sender's new balance
    """
    transaction = _find_pending_transfer(reference)

    if transaction.is_terminal:
        return _terminal_result(transaction)

    expected = (transaction.meta or {}).get('verification_code', '')
    if not code or not secrets.compare_digest(str(code), expected):
        logger.warning("Wrong verification code for transfer %s", reference)
        raise ValidationError("Invalid verification code")

    transaction_id = transaction.id
    amount = transaction.amount
    recipient_email = transaction.meta.get('recipient_email')

    try:
        with atomic_unit("transfer verification"):
            claimed = Transaction.query.filter_by(
                id=transaction_id,
                status=TransactionStatus.PENDING.value
            ).update({
                Transaction.status: TransactionStatus.COMPLETED.value,
                Transaction.completed_at: utcnow(),
            }, synchronize_session='fetch')
            if claimed != 1:
                raise TransferAlreadyProcessed(f"Transaction {reference} already processed")

            sender_wallet = get_wallet(transaction.user_id, lock=True)
            recipient = find_user_by_email(recipient_email)
            sender_transaction, recipient_transaction = move_funds(
                sender_wallet=sender_wallet,
                recipient=recipient,
                amount=amount,
                reference=reference,
                description=transaction.description,
                sender_transaction=transaction,
            )
    except TransferAlreadyProcessed:
        db.session.refresh(transaction)
        return _terminal_result(transaction)
    except LedgerError as e:
        try:
            _mark_failed(transaction_id, str(e))
        except LedgerError:
            logger.exception("Could not mark transfer %s as failed", reference)
        raise

    logger.info("Transfer %s completed: %s from user %s to %s (credited=%s)",
                reference, amount, sender_wallet.user_id, recipient_email,
                recipient_transaction is not None)

    announce_transfer(sender_transaction, recipient_transaction)

    return {
        'reference': reference,
        'status': sender_transaction.status,
        'new_balance': sender_wallet.balance,
        'recipient_credited': recipient_transaction is not None,
        'already_processed': False,
    }


# ============================================================
# STATUS
# ============================================================

def get_transfer_status(reference, user_id=None):
    """Public view of a transfer. Never exposes the verification code."""
    transaction = _find_pending_transfer(reference)
    if user_id is not None and transaction.user_id != user_id:
        raise NotFoundError("Transaction not found")

    view = transaction.to_view()
    view['recipient_email'] = (transaction.meta or {}).get('recipient_email')
    return view
