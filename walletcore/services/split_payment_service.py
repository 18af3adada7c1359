"""
SPLIT PAYMENT SERVICE
=====================

CRITICAL BUSINESS RULES:
1. Only members can contribute, pay or approve
2. Contributions move money wallet -> pool with no approval
3. A payment executes once its approvals reach min_approvals
   (the initiator's approval is implicit)
4. Executing a payment flips pending -> completed and decrements the pool
   in one unit; a completed payment is never decremented again
5. The pool balance never goes below zero
"""

import logging
from collections import OrderedDict
from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple

from walletcore.extensions import db
from walletcore.models import (
    SplitPaymentGroup, SplitGroupMember, SplitContribution, SplitTransaction, SplitApproval,
    TransactionType, TransactionStatus, Direction, PaymentMethod, utcnow
)
from walletcore.services.ledger_service import (
    CENTS, atomic_unit, to_amount, generate_invite_code, generate_unique_reference, get_wallet,
    debit_wallet, record_transaction, find_user_by_id, ValidationError, NotFoundError,
    ConflictError, InsufficientFundsError, PermissionDeniedError
)
from walletcore.services.authorization_service import require_authorization, can_use_split_group
from walletcore.services import notification_service
from walletcore.signals import transaction_completed

logger = logging.getLogger(__name__)

PAYMENT_METHODS = tuple(m.value for m in PaymentMethod)


class Debt(NamedTuple):
    debtor: int
    creditor: int
    amount: Decimal


# ============================================================
# GROUPS
# ============================================================

def create_group(creator_id, name, description=None, payment_purpose=None, target_amount=None,
                 due_date=None, currency=None):
    if not name:
        raise ValidationError("Group name is required")
    if not find_user_by_id(creator_id):
        raise NotFoundError(f"User {creator_id} not found")
    if target_amount is not None:
        target_amount = to_amount(target_amount, field='target_amount')

    with atomic_unit("create split group"):
        group = SplitPaymentGroup(
            name=name.strip(),
            description=description,
            creator_id=creator_id,
            balance=Decimal('0.00'),
            currency=currency or get_wallet(creator_id).currency,
            invite_code=generate_invite_code(SplitPaymentGroup),
            payment_purpose=payment_purpose,
            target_amount=target_amount,
            due_date=due_date,
            is_active=True,
        )
        group.members.append(SplitGroupMember(user_id=creator_id, joined_at=utcnow()))
        db.session.add(group)

    logger.info("Split group %s created by user %s", group.id, creator_id)
    return group


def get_group_or_404(group_id, lock=False):
    query = SplitPaymentGroup.query.filter_by(id=group_id)
    if lock:
        query = query.with_for_update()
    group = query.first()
    if not group:
        raise NotFoundError("Group not found")
    return group


def get_group(group_id, user_id):
    group = get_group_or_404(group_id)
    if not group.is_member(user_id):
        raise PermissionDeniedError("User is not a member of this group")
    return group


def list_user_groups(user_id):
    return SplitPaymentGroup.query.join(SplitGroupMember).filter(
        SplitGroupMember.user_id == user_id,
        SplitPaymentGroup.is_active.is_(True),
    ).order_by(SplitPaymentGroup.created_at.desc()).all()


# ============================================================
# CONTRIBUTE
# ============================================================

def contribute(group_id, user_id, amount, notes=None):
    """Move money from the member's wallet into the pool."""
    amount = to_amount(amount)

    with atomic_unit("split contribution"):
        group = get_group_or_404(group_id, lock=True)
        require_authorization(can_use_split_group, user_id, group)

        wallet = get_wallet(user_id, lock=True)
        debit_wallet(wallet, amount)

        db.session.query(SplitPaymentGroup).filter(SplitPaymentGroup.id == group.id).update(
            {SplitPaymentGroup.balance: SplitPaymentGroup.balance + amount},
            synchronize_session='fetch'
        )

        transaction = record_transaction(
            user_id=user_id,
            wallet=wallet,
            type=TransactionType.SPLIT_CONTRIBUTION.value,
            direction=Direction.DEBIT.value,
            amount=amount,
            description=f"Contribution to {group.name}",
            metadata={'group_id': group.id},
        )
        contribution = SplitContribution(
            group_id=group.id,
            contributor_id=user_id,
            amount=amount,
            status=TransactionStatus.COMPLETED.value,
            notes=notes,
            transaction_reference=transaction.reference,
        )
        db.session.add(contribution)

    logger.info("User %s contributed %s to split group %s", user_id, amount, group_id)

    transaction_completed.send(transaction)
    for member_id in group.member_ids():
        notification_service.notify(
            user_id=member_id,
            type=notification_service.SPLIT_PAYMENT,
            title="New group contribution",
            message=f"{amount} was contributed to {group.name}",
            reference=transaction.reference,
        )

    return {
        'contribution': contribution,
        'reference': transaction.reference,
        'group_balance': group.balance,
        'new_balance': wallet.balance,
    }


# ============================================================
# PAYMENTS & APPROVALS
# ============================================================

def make_payment(group_id, initiator_id, amount, recipient, payment_method=None, description=None,
                 requires_approval=True, min_approvals=1):
    """
    Create a payment out of the pool.

    Executes immediately when approval is not required or the initiator's
    own approval already satisfies min_approvals.
    """
    amount = to_amount(amount)
    payment_method = payment_method or PaymentMethod.BANK_TRANSFER.value
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}"
        )
    if not recipient:
        raise ValidationError("Recipient is required")
    if not isinstance(min_approvals, int) or min_approvals < 1:
        raise ValidationError("min_approvals must be at least 1")

    with atomic_unit("split payment"):
        group = get_group_or_404(group_id, lock=True)
        require_authorization(can_use_split_group, initiator_id, group)

        if group.balance < amount:
            raise InsufficientFundsError(
                f"Insufficient group balance. Required: {amount}, Available: {group.balance}"
            )
        if requires_approval and min_approvals > len(group.members):
            raise ValidationError("min_approvals cannot exceed the number of group members")

        split_tx = SplitTransaction(
            group_id=group.id,
            initiator_id=initiator_id,
            transaction_ref=generate_unique_reference(),
            amount=amount,
            payment_method=payment_method,
            recipient=recipient,
            description=description,
            status=TransactionStatus.PENDING.value,
            requires_approval=requires_approval,
            min_approvals=min_approvals,
        )
        split_tx.approvals.append(SplitApproval(user_id=initiator_id, approved_at=utcnow()))
        db.session.add(split_tx)
        db.session.flush()

        ledger_tx = None
        if not requires_approval or min_approvals <= 1:
            ledger_tx = _execute_payment(split_tx, group)

    logger.info("Split payment %s created in group %s (%s, executed=%s)",
                split_tx.transaction_ref, group_id, amount, ledger_tx is not None)

    if ledger_tx is not None:
        _announce_payment(group, split_tx, ledger_tx)
    else:
        for member_id in group.member_ids():
            if member_id == initiator_id:
                continue
            notification_service.notify(
                user_id=member_id,
                type=notification_service.SPLIT_PAYMENT,
                title="Payment needs your approval",
                message=f"A payment of {amount} to {recipient} from {group.name} awaits approval",
                reference=split_tx.transaction_ref,
            )

    return split_tx


def approve_payment(transaction_ref, approver_id):
    """
    Record an approval; executes the payment when min_approvals is reached.

    If the pool cannot cover the payment at that point the approval is not
    recorded either.
    """
    with atomic_unit("split payment approval"):
        split_tx = SplitTransaction.query.filter_by(
            transaction_ref=transaction_ref
        ).with_for_update().first()
        if not split_tx:
            raise NotFoundError("Transaction not found")

        group = get_group_or_404(split_tx.group_id, lock=True)
        if not group.is_member(approver_id):
            raise PermissionDeniedError("User is not a member of this group")
        if split_tx.status != TransactionStatus.PENDING.value:
            raise ConflictError(f"This transaction is already {split_tx.status}")
        if approver_id in split_tx.approver_ids():
            raise ConflictError("User has already approved this transaction")

        split_tx.approvals.append(SplitApproval(user_id=approver_id, approved_at=utcnow()))
        db.session.flush()

        ledger_tx = None
        if len(split_tx.approvals) >= split_tx.min_approvals:
            ledger_tx = _execute_payment(split_tx, group)

    logger.info("User %s approved split payment %s (%s/%s)", approver_id, transaction_ref,
                len(split_tx.approvals), split_tx.min_approvals)

    if ledger_tx is not None:
        _announce_payment(group, split_tx, ledger_tx)
    return split_tx


def _execute_payment(split_tx, group):
    """
    Flip the payment to completed and decrement the pool. Does NOT commit.
    """
    claimed = db.session.query(SplitTransaction).filter(
        SplitTransaction.id == split_tx.id,
        SplitTransaction.status == TransactionStatus.PENDING.value,
    ).update({
        SplitTransaction.status: TransactionStatus.COMPLETED.value,
        SplitTransaction.completed_at: utcnow(),
    }, synchronize_session='fetch')
    if claimed != 1:
        raise ConflictError(f"Transaction {split_tx.transaction_ref} was already processed")

    debited = db.session.query(SplitPaymentGroup).filter(
        SplitPaymentGroup.id == group.id,
        SplitPaymentGroup.balance >= split_tx.amount,
    ).update({SplitPaymentGroup.balance: SplitPaymentGroup.balance - split_tx.amount},
             synchronize_session='fetch')
    if debited != 1:
        raise InsufficientFundsError(
            f"Insufficient group balance. Required: {split_tx.amount}, Available: {group.balance}"
        )

    # Pool-side entry: attributed to the initiator, no wallet involved
    return record_transaction(
        user_id=split_tx.initiator_id,
        type=TransactionType.SPLIT_PAYMENT.value,
        direction=Direction.DEBIT.value,
        amount=split_tx.amount,
        reference=f"{split_tx.transaction_ref}-POOL",
        description=split_tx.description or f"Payment from {group.name} to {split_tx.recipient}",
        currency=group.currency,
        metadata={
            'group_id': group.id,
            'transaction_ref': split_tx.transaction_ref,
            'recipient': split_tx.recipient,
            'payment_method': split_tx.payment_method,
        },
    )


def _announce_payment(group, split_tx, ledger_tx):
    transaction_completed.send(ledger_tx)
    for member_id in group.member_ids():
        notification_service.notify(
            user_id=member_id,
            type=notification_service.SPLIT_PAYMENT,
            title="Group payment completed",
            message=f"{split_tx.amount} was paid from {group.name} to {split_tx.recipient}",
            reference=split_tx.transaction_ref,
        )


# ============================================================
# SETTLEMENT MATH
# ============================================================

def calculate_fair_shares(member_ids, total_amount):
    """Equal share of total_amount per member (unrounded)."""
    member_ids = list(member_ids)
    if not member_ids:
        return {}
    share = Decimal(str(total_amount)) / len(member_ids)
    return {member_id: share for member_id in member_ids}


def _to_cents(amount):
    return int((Decimal(str(amount)) / CENTS).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _share_cents(member_ids, total_cents):
    """
    Split total_cents into whole-cent shares that sum exactly to the total.

    Every share has the same fractional part, so the largest-remainder
    leftover cents go to the first members in member order.
    """
    base, leftover = divmod(total_cents, len(member_ids))
    return {
        member_id: base + (1 if index < leftover else 0)
        for index, member_id in enumerate(member_ids)
    }


def calculate_debts(member_ids, contributions_by_member):
    """
    Greedy debt netting towards equal shares.

    Balances are worked out in whole cents against shares that sum exactly
    to the pool total. Debtors (below their share) and creditors (above it)
    are each sorted by amount descending once; every debtor pays the head
    creditor until its debt is cleared. Ties keep member order. Each step
    clears a debtor or a creditor, so there are at most M-1 debts.

    Returns: list of Debt(debtor, creditor, amount)
    """
    member_ids = list(member_ids)
    if len(member_ids) <= 1:
        return []

    contributions = OrderedDict(
        (member_id, _to_cents(contributions_by_member.get(member_id, 0)))
        for member_id in member_ids
    )
    shares = _share_cents(member_ids, sum(contributions.values()))

    debtors = []
    creditors = []
    for member_id, contributed in contributions.items():
        balance = contributed - shares[member_id]
        if balance < 0:
            debtors.append([member_id, -balance])
        elif balance > 0:
            creditors.append([member_id, balance])

    debtors.sort(key=lambda entry: entry[1], reverse=True)
    creditors.sort(key=lambda entry: entry[1], reverse=True)

    debts = []
    for debtor_id, remaining in debtors:
        while remaining > 0 and creditors:
            creditor = creditors[0]
            payment = min(remaining, creditor[1])
            debts.append(Debt(debtor_id, creditor[0], (Decimal(payment) * CENTS).quantize(CENTS)))
            remaining -= payment
            creditor[1] -= payment
            if creditor[1] == 0:
                creditors.pop(0)

    return debts


def get_member_contribution_stats(member_ids, contributions_by_member):
    total = sum((Decimal(str(v)) for v in contributions_by_member.values()), Decimal('0'))
    stats = []
    for member_id in member_ids:
        amount = Decimal(str(contributions_by_member.get(member_id, 0)))
        percentage = (amount / total * 100) if total > 0 else Decimal('0')
        stats.append({
            'member_id': member_id,
            'contribution_amount': amount,
            'contribution_percentage': percentage.quantize(CENTS, rounding=ROUND_HALF_UP),
        })
    return stats


# ============================================================
# REPORTING
# ============================================================

def _completed_contributions(group_id):
    return SplitContribution.query.filter_by(
        group_id=group_id,
        status=TransactionStatus.COMPLETED.value,
    ).order_by(SplitContribution.created_at.asc(), SplitContribution.id.asc()).all()


def contributions_by_member(group_id):
    totals = {}
    for contribution in _completed_contributions(group_id):
        totals[contribution.contributor_id] = totals.get(
            contribution.contributor_id, Decimal('0')
        ) + contribution.amount
    return totals


def get_group_contributions(group_id, user_id):
    group = get_group(group_id, user_id)
    return group.contributions.order_by(SplitContribution.created_at.desc()).all()


def get_group_transactions(group_id, user_id, status=None):
    group = get_group(group_id, user_id)
    query = group.transactions
    if status:
        query = query.filter_by(status=status)
    return query.order_by(SplitTransaction.created_at.desc()).all()


def get_group_statistics(group_id, user_id):
    group = get_group(group_id, user_id)
    member_ids = group.member_ids()
    by_member = contributions_by_member(group.id)

    spend_by_method = {}
    completed_payments = group.transactions.filter_by(
        status=TransactionStatus.COMPLETED.value
    ).all()
    for payment in completed_payments:
        method = payment.payment_method or 'other'
        spend_by_method[method] = spend_by_method.get(method, Decimal('0')) + payment.amount

    by_month = {}
    for contribution in _completed_contributions(group.id):
        month = contribution.created_at.strftime('%Y-%m')
        by_month[month] = by_month.get(month, Decimal('0')) + contribution.amount

    total_contributed = sum(by_member.values(), Decimal('0'))
    return {
        'balance': group.balance,
        'total_contributed': total_contributed,
        'total_spent': sum(spend_by_method.values(), Decimal('0')),
        'contributions_by_member': by_member,
        'member_stats': get_member_contribution_stats(member_ids, by_member),
        'fair_shares': calculate_fair_shares(member_ids, total_contributed),
        'debts': [debt._asdict() for debt in calculate_debts(member_ids, by_member)],
        'spend_by_payment_method': spend_by_method,
        'contributions_by_month': by_month,
    }
