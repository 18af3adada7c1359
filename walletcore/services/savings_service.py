"""
SAVINGS CIRCLE SERVICE (AJO / ESUSU)
====================================

CRITICAL BUSINESS RULES:
1. Each member contributes contribution_amount exactly once per cycle
2. When every member has paid, the member at current_payout_position
   receives contribution_amount x member count, in the same commit as
   the last contribution
3. Paid flags reset and the payout position advances modulo member count
4. The circle closes when current_cycle reaches total_cycles
"""

import logging
from decimal import Decimal

from flask import current_app

from walletcore.extensions import db
from walletcore.models import (
    SavingsCircle, SavingsCircleMember, TransactionType, Direction, Frequency, utcnow
)
from walletcore.services.ledger_service import (
    atomic_unit, to_amount, generate_invite_code, get_wallet, debit_wallet, credit_wallet,
    record_transaction, find_user_by_id, ValidationError, NotFoundError, ConflictError,
    PermissionDeniedError
)
from walletcore.services.scheduled_transfer_service import compute_next_execution
from walletcore.services import notification_service
from walletcore.signals import transaction_completed

logger = logging.getLogger(__name__)

CIRCLE_FREQUENCIES = (
    Frequency.DAILY.value,
    Frequency.WEEKLY.value,
    Frequency.BIWEEKLY.value,
    Frequency.MONTHLY.value,
)


# ============================================================
# CREATE / READ
# ============================================================

def create_circle(creator_id, name, contribution_amount, frequency, total_cycles, start_date,
                  description=None, is_public=False, now=None):
    """Create a circle with the creator as the first member (position 0)."""
    now = now or utcnow()

    if not name:
        raise ValidationError("Circle name is required")
    amount = to_amount(contribution_amount, field='contribution_amount')
    minimum = current_app.config['SAVINGS_MIN_CONTRIBUTION']
    if amount < minimum:
        raise ValidationError(f"Minimum contribution amount is {minimum}")
    if frequency not in CIRCLE_FREQUENCIES:
        raise ValidationError(
            f"Invalid frequency. Must be one of: {', '.join(CIRCLE_FREQUENCIES)}"
        )
    if not isinstance(total_cycles, int) or total_cycles < 1:
        raise ValidationError("Total cycles must be at least 1")
    if start_date is None or start_date <= now:
        raise ValidationError("Start date must be in the future")
    if not find_user_by_id(creator_id):
        raise NotFoundError(f"User {creator_id} not found")

    wallet = get_wallet(creator_id)

    with atomic_unit("create savings circle"):
        circle = SavingsCircle(
            name=name.strip(),
            description=description,
            creator_id=creator_id,
            contribution_amount=amount,
            currency=wallet.currency,
            frequency=frequency,
            start_date=start_date,
            next_contribution_date=start_date,
            current_cycle=0,
            total_cycles=total_cycles,
            current_payout_position=0,
            is_active=True,
            is_public=is_public,
            invite_code=generate_invite_code(SavingsCircle),
        )
        circle.members.append(new_member(creator_id, position=0))
        db.session.add(circle)

    logger.info("Savings circle %s created by user %s (%s x %s cycles)",
                circle.id, creator_id, amount, total_cycles)
    return circle


def new_member(user_id, position):
    return SavingsCircleMember(
        user_id=user_id,
        position=position,
        has_paid_current_cycle=False,
        has_received_current_cycle=False,
        total_contributed=Decimal('0.00'),
        total_received=Decimal('0.00'),
        join_date=utcnow(),
    )


def get_circle_or_404(circle_id, lock=False):
    query = SavingsCircle.query.filter_by(id=circle_id)
    if lock:
        query = query.with_for_update()
    circle = query.first()
    if not circle:
        raise NotFoundError("Savings circle not found")
    return circle


def circle_summary(circle):
    member_count = len(circle.members)
    payout_member = circle.member_at_position(circle.current_payout_position)
    return {
        'id': circle.id,
        'name': circle.name,
        'description': circle.description,
        'creator_id': circle.creator_id,
        'contribution_amount': circle.contribution_amount,
        'currency': circle.currency,
        'frequency': circle.frequency,
        'invite_code': circle.invite_code,
        'is_active': circle.is_active,
        'current_cycle': circle.current_cycle,
        'total_cycles': circle.total_cycles,
        'next_contribution_date': circle.next_contribution_date,
        'payout_amount': circle.contribution_amount * member_count,
        'next_payout_user_id': payout_member.user_id if payout_member else None,
        'paid_count': sum(1 for m in circle.members if m.has_paid_current_cycle),
        'members': [
            {
                'user_id': m.user_id,
                'position': m.position,
                'has_paid_current_cycle': m.has_paid_current_cycle,
                'has_received_current_cycle': m.has_received_current_cycle,
                'total_contributed': m.total_contributed,
                'total_received': m.total_received,
            }
            for m in circle.members
        ],
    }


def get_circle(circle_id, user_id):
    """Summary view; private circles are visible to members only."""
    circle = get_circle_or_404(circle_id)
    if not circle.is_public and circle.get_member(user_id) is None:
        raise PermissionDeniedError("You are not a member of this savings circle")
    return circle_summary(circle)


def list_user_circles(user_id, active_only=False):
    query = SavingsCircle.query.join(SavingsCircleMember).filter(
        SavingsCircleMember.user_id == user_id
    )
    if active_only:
        query = query.filter(SavingsCircle.is_active.is_(True))
    return [circle_summary(c) for c in query.order_by(SavingsCircle.created_at.desc()).all()]


# ============================================================
# CONTRIBUTE
# ============================================================

def contribute(circle_id, user_id):
    """
    Pay this cycle's contribution; pays out when it is the last one.

    Returns: dict with the contribution and, if it happened, the payout
    """
    with atomic_unit("savings contribution"):
        circle = get_circle_or_404(circle_id, lock=True)
        if not circle.is_active:
            raise ConflictError("This savings circle is no longer active")

        member = circle.get_member(user_id)
        if member is None:
            raise PermissionDeniedError("You are not a member of this savings circle")
        if member.has_paid_current_cycle:
            raise ConflictError("You have already contributed for this cycle")

        amount = circle.contribution_amount
        cycle = circle.current_cycle + 1

        wallet = get_wallet(user_id, lock=True)
        debit_wallet(wallet, amount)
        contribution_tx = record_transaction(
            user_id=user_id,
            wallet=wallet,
            type=TransactionType.SAVINGS_CONTRIBUTION.value,
            direction=Direction.DEBIT.value,
            amount=amount,
            description=f"Contribution to {circle.name} (cycle {cycle})",
            metadata={'circle_id': circle.id, 'cycle': cycle},
        )

        member.has_paid_current_cycle = True
        member.total_contributed = member.total_contributed + amount

        payout = process_payout_if_ready(circle)

    logger.info("User %s contributed %s to circle %s (cycle %s)", user_id, amount, circle_id, cycle)

    transaction_completed.send(contribution_tx)
    notification_service.notify(
        user_id=user_id,
        type=notification_service.SAVINGS,
        title="Contribution received",
        message=f"Your contribution of {amount} to {circle.name} was received",
        reference=contribution_tx.reference,
    )
    if payout is not None:
        announce_payout(circle, payout)

    return {
        'reference': contribution_tx.reference,
        'amount': amount,
        'cycle': cycle,
        'new_balance': wallet.balance,
        'payout_processed': payout is not None,
        'payout': _payout_view(payout),
    }


# ============================================================
# PAYOUT
# ============================================================

def process_payout_if_ready(circle):
    """Run the payout when every member has paid. Runs inside the caller's unit."""
    if not circle.is_active or not circle.all_members_paid():
        return None
    return process_payout(circle)


def process_payout(circle):
    """
    Pay the pot to the member at current_payout_position and advance the cycle.
    Does NOT commit.
    """
    if not circle.all_members_paid():
        raise ConflictError("Not all members have contributed for this cycle")

    recipient = circle.member_at_position(circle.current_payout_position)
    if recipient is None:
        raise ConflictError(
            f"No member at payout position {circle.current_payout_position}"
        )

    member_count = len(circle.members)
    payout_amount = circle.contribution_amount * member_count
    cycle = circle.current_cycle + 1

    wallet = get_wallet(recipient.user_id, lock=True)
    credit_wallet(wallet, payout_amount)
    payout_tx = record_transaction(
        user_id=recipient.user_id,
        wallet=wallet,
        type=TransactionType.SAVINGS_PAYOUT.value,
        direction=Direction.CREDIT.value,
        amount=payout_amount,
        description=f"Payout from {circle.name} (cycle {cycle})",
        metadata={'circle_id': circle.id, 'cycle': cycle},
    )

    for member in circle.members:
        member.has_paid_current_cycle = False
        member.has_received_current_cycle = False
    recipient.has_received_current_cycle = True
    recipient.total_received = recipient.total_received + payout_amount

    circle.current_cycle = cycle
    circle.current_payout_position = (circle.current_payout_position + 1) % member_count
    if circle.next_contribution_date is not None:
        circle.next_contribution_date = compute_next_execution(
            circle.next_contribution_date, circle.frequency
        )

    is_completed = circle.current_cycle >= circle.total_cycles
    if is_completed:
        circle.is_active = False
        circle.end_date = utcnow()

    logger.info("Circle %s paid %s to user %s for cycle %s%s", circle.id, payout_amount,
                recipient.user_id, cycle, " (circle completed)" if is_completed else "")

    return {
        'user_id': recipient.user_id,
        'amount': payout_amount,
        'cycle': cycle,
        'is_completed': is_completed,
        'transaction': payout_tx,
    }


def _payout_view(payout):
    if payout is None:
        return None
    return {
        'user_id': payout['user_id'],
        'amount': payout['amount'],
        'cycle': payout['cycle'],
        'is_completed': payout['is_completed'],
        'reference': payout['transaction'].reference,
    }


def announce_payout(circle, payout):
    transaction_completed.send(payout['transaction'])
    notification_service.notify(
        user_id=payout['user_id'],
        type=notification_service.SAVINGS,
        title="Savings payout",
        message=f"You received {payout['amount']} from {circle.name}",
        reference=payout['transaction'].reference,
    )
