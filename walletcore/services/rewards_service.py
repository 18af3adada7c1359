"""
REWARDS SERVICE
===============

Cashback accrued from completed transactions.

CRITICAL BUSINESS RULES:
1. Only completed transactions earn rewards, at most once per transaction
2. Reward row, balance increment and tier recompute share one commit
3. Accrual failures are logged; they never undo the ledger mutation
   that triggered them
"""

import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import inspect

from walletcore.extensions import db
from walletcore.models import (
    Reward, RewardsBalance, RewardsRedemption, RewardType, RewardTier, RedemptionMethod,
    TransactionType, TransactionStatus, Direction
)
from walletcore.services.ledger_service import (
    CENTS, atomic_unit, to_amount, generate_reference, ValidationError, NotFoundError,
    InsufficientFundsError
)

logger = logging.getLogger(__name__)

REWARD_RATES = {
    RewardType.TRANSFER.value: Decimal('0.005'),
    RewardType.BILL_PAYMENT.value: Decimal('0.01'),
    RewardType.CARD_USAGE.value: Decimal('0.01'),
    RewardType.SAVINGS.value: Decimal('0.0025'),
}
REFERRAL_REWARD = Decimal('500')

TIER_THRESHOLDS = (
    (RewardTier.PLATINUM.value, Decimal('50000')),
    (RewardTier.GOLD.value, Decimal('20000')),
    (RewardTier.SILVER.value, Decimal('5000')),
    (RewardTier.BRONZE.value, Decimal('0')),
)

REDEMPTION_METHODS = tuple(m.value for m in RedemptionMethod)


# ============================================================
# CALCULATIONS
# ============================================================

def calculate_reward_amount(reward_type, transaction_amount):
    if reward_type == RewardType.REFERRAL.value:
        return REFERRAL_REWARD.quantize(CENTS)
    rate = REWARD_RATES.get(reward_type)
    if rate is None:
        return Decimal('0.00')
    amount = Decimal(str(transaction_amount)) * rate
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def determine_reward_tier(lifetime_earned):
    """
    Returns: (tier, next_tier_progress) where progress is a whole percentage
    towards the next tier, capped at 99 until platinum.
    """
    lifetime_earned = Decimal(str(lifetime_earned))

    for index, (tier, threshold) in enumerate(TIER_THRESHOLDS):
        if lifetime_earned < threshold:
            continue
        if index == 0:
            return tier, 100
        next_threshold = TIER_THRESHOLDS[index - 1][1]
        progress = (lifetime_earned - threshold) / (next_threshold - threshold) * 100
        rounded = int(progress.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        return tier, min(rounded, 99)

    return RewardTier.BRONZE.value, 0


def reward_type_for(transaction):
    """Map a completed ledger transaction to the reward type it earns, if any."""
    source = (transaction.meta or {}).get('source')

    if transaction.type == TransactionType.TRANSFER.value:
        return RewardType.TRANSFER.value if transaction.direction == Direction.DEBIT.value else None
    if transaction.type == TransactionType.BILL_PAYMENT.value:
        return RewardType.BILL_PAYMENT.value
    if transaction.type == TransactionType.SAVINGS_CONTRIBUTION.value:
        return RewardType.SAVINGS.value
    if transaction.type == TransactionType.FUNDING.value and source == 'savings':
        return RewardType.SAVINGS.value
    if transaction.type == TransactionType.OTHER.value and source == 'card':
        return RewardType.CARD_USAGE.value
    if transaction.type == TransactionType.SPLIT_CONTRIBUTION.value:
        return RewardType.TRANSFER.value
    return None


# ============================================================
# ACCRUAL
# ============================================================

def _get_or_create_balance(user_id):
    balance = RewardsBalance.query.filter_by(user_id=user_id).with_for_update().first()
    if balance is None:
        balance = RewardsBalance(
            user_id=user_id,
            available_balance=Decimal('0.00'),
            lifetime_earned=Decimal('0.00'),
            lifetime_redeemed=Decimal('0.00'),
            tier=RewardTier.BRONZE.value,
            next_tier_progress=0,
        )
        db.session.add(balance)
    return balance


def create_reward_for_transaction(transaction, reward_type):
    """
    Credit the reward earned by a completed transaction.

    Returns: Reward, or None when nothing is earned
    """
    if transaction.status != TransactionStatus.COMPLETED.value:
        return None

    amount = calculate_reward_amount(reward_type, transaction.amount)
    if amount <= 0:
        return None

    with atomic_unit("reward accrual"):
        existing = Reward.query.filter_by(transaction_id=transaction.id).first()
        if existing is not None:
            return existing

        reward = Reward(
            user_id=transaction.user_id,
            transaction_id=transaction.id,
            type=reward_type,
            amount=amount,
            status='credited',
        )
        db.session.add(reward)

        balance = _get_or_create_balance(transaction.user_id)
        balance.available_balance = balance.available_balance + amount
        balance.lifetime_earned = balance.lifetime_earned + amount
        balance.tier, balance.next_tier_progress = determine_reward_tier(balance.lifetime_earned)

    logger.info("Reward of %s (%s) credited to user %s for %s",
                amount, reward_type, transaction.user_id, transaction.reference)
    return reward


def accrue_rewards_for_transaction(transaction, **extra):
    """
    transaction_completed receiver.

    Runs after the ledger commit, so a failure here is logged and never
    reaches the caller of the operation that moved the money.
    """
    try:
        reward_type = reward_type_for(transaction)
        if reward_type is None:
            return None
        return create_reward_for_transaction(transaction, reward_type)
    except Exception:
        logger.exception("Error creating reward for transaction %s", inspect(transaction).identity)
        db.session.rollback()
        return None


# ============================================================
# REDEMPTION
# ============================================================

def generate_redemption_reference():
    reference = generate_reference('RDM')
    while RewardsRedemption.query.filter_by(reference=reference).first() is not None:
        reference = generate_reference('RDM')
    return reference


def redeem_rewards(user_id, amount, method):
    """Create a pending redemption; fulfilment happens through an external payout channel."""
    if method not in REDEMPTION_METHODS:
        raise ValidationError(
            f"Invalid redemption method. Must be one of: {', '.join(REDEMPTION_METHODS)}"
        )
    amount = to_amount(amount)

    with atomic_unit("rewards redemption"):
        balance = RewardsBalance.query.filter_by(user_id=user_id).with_for_update().first()
        if balance is None:
            raise NotFoundError("No rewards balance found for user")

        updated = db.session.query(RewardsBalance).filter(
            RewardsBalance.id == balance.id,
            RewardsBalance.available_balance >= amount,
        ).update({
            RewardsBalance.available_balance: RewardsBalance.available_balance - amount,
            RewardsBalance.lifetime_redeemed: RewardsBalance.lifetime_redeemed + amount,
        }, synchronize_session='fetch')
        if updated != 1:
            raise InsufficientFundsError("Insufficient rewards balance")

        redemption = RewardsRedemption(
            user_id=user_id,
            amount=amount,
            method=method,
            status=TransactionStatus.PENDING.value,
            reference=generate_redemption_reference(),
        )
        db.session.add(redemption)

    logger.info("User %s redeemed %s rewards via %s (%s)", user_id, amount, method,
                redemption.reference)
    return redemption


# ============================================================
# READ
# ============================================================

def get_user_rewards_info(user_id, recent_limit=10):
    balance = RewardsBalance.query.filter_by(user_id=user_id).first()
    recent_rewards = Reward.query.filter_by(user_id=user_id).order_by(
        Reward.created_at.desc(), Reward.id.desc()
    ).limit(recent_limit).all()
    recent_redemptions = RewardsRedemption.query.filter_by(user_id=user_id).order_by(
        RewardsRedemption.created_at.desc(), RewardsRedemption.id.desc()
    ).limit(recent_limit).all()

    return {
        'available_balance': balance.available_balance if balance else Decimal('0.00'),
        'lifetime_earned': balance.lifetime_earned if balance else Decimal('0.00'),
        'lifetime_redeemed': balance.lifetime_redeemed if balance else Decimal('0.00'),
        'tier': balance.tier if balance else RewardTier.BRONZE.value,
        'next_tier_progress': balance.next_tier_progress if balance else 0,
        'recent_rewards': recent_rewards,
        'recent_redemptions': recent_redemptions,
    }
