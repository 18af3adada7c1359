from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from walletcore.extensions import db
from walletcore.types import Money


def utcnow():
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


MONEY = Money()


# ============================================================
# ENUMS
# ============================================================

class TransactionType(Enum):
    FUNDING = 'funding'
    WITHDRAWAL = 'withdrawal'
    TRANSFER = 'transfer'
    BILL_PAYMENT = 'bill_payment'
    SAVINGS_CONTRIBUTION = 'savings_contribution'
    SAVINGS_PAYOUT = 'savings_payout'
    SPLIT_CONTRIBUTION = 'split_contribution'
    SPLIT_PAYMENT = 'split_payment'
    OTHER = 'other'


class TransactionStatus(Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Direction(Enum):
    DEBIT = 'debit'
    CREDIT = 'credit'


class Frequency(Enum):
    ONE_TIME = 'one-time'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'


class ScheduledTransferStatus(Enum):
    ACTIVE = 'active'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    FAILED = 'failed'


class PaymentMethod(Enum):
    VIRTUAL_CARD = 'virtual_card'
    BANK_TRANSFER = 'bank_transfer'
    BILL_PAYMENT = 'bill_payment'


class RewardType(Enum):
    TRANSFER = 'transfer'
    BILL_PAYMENT = 'bill_payment'
    CARD_USAGE = 'card_usage'
    SAVINGS = 'savings'
    REFERRAL = 'referral'


class RewardTier(Enum):
    BRONZE = 'bronze'
    SILVER = 'silver'
    GOLD = 'gold'
    PLATINUM = 'platinum'


class RedemptionMethod(Enum):
    WALLET_CREDIT = 'wallet_credit'
    BANK_TRANSFER = 'bank_transfer'
    AIRTIME = 'airtime'
    BILL_PAYMENT = 'bill_payment'
    CARD_FUNDING = 'card_funding'


# ============================================================
# USER MODEL
# ============================================================
class User(db.Model):
    """
    A platform user as seen by the ledger core.
    Used for recipient resolution by email or id; authentication lives elsewhere.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    wallet = db.relationship('Wallet', backref='owner', uselist=False)

    def __repr__(self):
        return f'<User {self.email}>'


# ============================================================
# WALLET MODEL
# ============================================================
class Wallet(db.Model):
    """
    One wallet per user.

    CRITICAL: 'balance' is only changed through ledger_service.debit_wallet /
    credit_wallet, always in the same commit as the Transaction describing it.
    """
    __tablename__ = 'wallets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    balance = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    currency = db.Column(db.String(3), default='NGN', nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='wallet_balance_non_negative'),
    )

    def __repr__(self):
        return f'<Wallet user={self.user_id} balance={self.balance}>'


# ============================================================
# TRANSACTION MODEL (LEDGER)
# ============================================================
class Transaction(db.Model):
    """
    Immutable record of a balance-affecting event.

    Lifecycle: pending -> completed | failed. The status transition out of
    'pending' is the only mutation allowed after creation.
    """
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    # Pool-side entries (split payments) have no wallet
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallets.id'), nullable=True)

    type = db.Column(db.String(30), nullable=False)
    direction = db.Column(db.String(10), nullable=False, default=Direction.DEBIT.value)
    amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(3), default='NGN', nullable=False)
    reference = db.Column(db.String(64), unique=True, nullable=False)
    status = db.Column(db.String(20), default=TransactionStatus.PENDING.value, nullable=False)
    description = db.Column(db.String(255))
    meta = db.Column('metadata', db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True, index=True)

    __table_args__ = (
        db.CheckConstraint('amount > 0', name='transaction_amount_positive'),
    )

    @property
    def is_terminal(self):
        return self.status != TransactionStatus.PENDING.value

    def to_view(self):
        return {
            'reference': self.reference,
            'type': self.type,
            'direction': self.direction,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'description': self.description,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'completed_at': self.completed_at,
        }

    def __repr__(self):
        return f'<Transaction {self.reference} {self.type} {self.status}>'


# ============================================================
# SCHEDULED TRANSFER MODEL
# ============================================================
class ScheduledTransfer(db.Model):
    """
    A recurring payment instruction advanced by the scheduler job.
    The recipient may not have an account yet, so recipient_id is optional.
    """
    __tablename__ = 'scheduled_transfers'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    recipient_email = db.Column(db.String(120), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(3), default='NGN', nullable=False)
    description = db.Column(db.String(255), default='')
    frequency = db.Column(db.String(20), nullable=False)
    next_execution_date = db.Column(db.DateTime, nullable=False, index=True)
    last_execution_date = db.Column(db.DateTime, nullable=True)
    execution_count = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(db.String(20), default=ScheduledTransferStatus.ACTIVE.value,
                       nullable=False, index=True)
    end_date = db.Column(db.DateTime, nullable=True)
    meta = db.Column('metadata', db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    owner = db.relationship('User', foreign_keys=[user_id])

    def __repr__(self):
        return f'<ScheduledTransfer {self.id} {self.frequency} {self.status}>'


# ============================================================
# SAVINGS CIRCLE MODELS (AJO / ESUSU)
# ============================================================
class SavingsCircle(db.Model):
    """
    Rotating group savings: every cycle each member contributes
    contribution_amount and the member at current_payout_position
    receives the whole pot.
    """
    __tablename__ = 'savings_circles'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    creator_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    contribution_amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(3), default='NGN', nullable=False)
    frequency = db.Column(db.String(20), default=Frequency.MONTHLY.value, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=True)
    next_contribution_date = db.Column(db.DateTime, nullable=True)
    current_cycle = db.Column(db.Integer, default=0, nullable=False)
    total_cycles = db.Column(db.Integer, nullable=False)
    current_payout_position = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_public = db.Column(db.Boolean, default=False, nullable=False)
    invite_code = db.Column(db.String(16), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    members = db.relationship('SavingsCircleMember', backref='circle',
                              order_by='SavingsCircleMember.position',
                              cascade='all, delete-orphan')

    def get_member(self, user_id):
        return next((m for m in self.members if m.user_id == user_id), None)

    def member_at_position(self, position):
        return next((m for m in self.members if m.position == position), None)

    def all_members_paid(self):
        return bool(self.members) and all(m.has_paid_current_cycle for m in self.members)

    def __repr__(self):
        return f'<SavingsCircle {self.name} cycle={self.current_cycle}/{self.total_cycles}>'


class SavingsCircleMember(db.Model):
    """Member rotation state. Positions form a permutation of 0..len(members)-1."""
    __tablename__ = 'savings_circle_members'

    id = db.Column(db.Integer, primary_key=True)
    circle_id = db.Column(db.Integer, db.ForeignKey('savings_circles.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    has_paid_current_cycle = db.Column(db.Boolean, default=False, nullable=False)
    has_received_current_cycle = db.Column(db.Boolean, default=False, nullable=False)
    total_contributed = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    total_received = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    join_date = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('circle_id', 'user_id', name='unique_circle_member'),
    )

    def __repr__(self):
        return f'<SavingsCircleMember user={self.user_id} position={self.position}>'


# ============================================================
# SPLIT PAYMENT MODELS
# ============================================================
class SplitPaymentGroup(db.Model):
    """
    Shared pool funded by member contributions and spent via payments
    that may need approvals from other members.
    """
    __tablename__ = 'split_payment_groups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    creator_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    balance = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    currency = db.Column(db.String(3), default='NGN', nullable=False)
    invite_code = db.Column(db.String(16), unique=True, nullable=False)
    payment_purpose = db.Column(db.String(200))
    target_amount = db.Column(MONEY, nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    members = db.relationship('SplitGroupMember', backref='group',
                              order_by='SplitGroupMember.id',
                              cascade='all, delete-orphan')
    contributions = db.relationship('SplitContribution', backref='group', lazy='dynamic',
                                    cascade='all, delete-orphan')
    transactions = db.relationship('SplitTransaction', backref='group', lazy='dynamic',
                                   cascade='all, delete-orphan')

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='split_pool_balance_non_negative'),
    )

    def member_ids(self):
        return [m.user_id for m in self.members]

    def is_member(self, user_id):
        return user_id in self.member_ids()

    def __repr__(self):
        return f'<SplitPaymentGroup {self.name} balance={self.balance}>'


class SplitGroupMember(db.Model):
    __tablename__ = 'split_group_members'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('split_payment_groups.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('group_id', 'user_id', name='unique_split_member'),
    )


class SplitContribution(db.Model):
    """Money moved from a member wallet into the pool. No approval required."""
    __tablename__ = 'split_contributions'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('split_payment_groups.id'), nullable=False)
    contributor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    status = db.Column(db.String(20), default=TransactionStatus.COMPLETED.value, nullable=False)
    notes = db.Column(db.String(255))
    transaction_reference = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<SplitContribution user={self.contributor_id} amount={self.amount}>'


class SplitTransaction(db.Model):
    """
    A payment out of the pool.

    Lifecycle:
    1. Created 'pending' with the initiator's implicit approval
    2. Members approve
    3. When approvals >= min_approvals the pool is debited once and
       status becomes 'completed'
    """
    __tablename__ = 'split_transactions'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('split_payment_groups.id'), nullable=False)
    initiator_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    transaction_ref = db.Column(db.String(64), unique=True, nullable=False)
    amount = db.Column(MONEY, nullable=False)
    payment_method = db.Column(db.String(30), default=PaymentMethod.BANK_TRANSFER.value)
    recipient = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(200))
    status = db.Column(db.String(20), default=TransactionStatus.PENDING.value, nullable=False)
    requires_approval = db.Column(db.Boolean, default=False, nullable=False)
    min_approvals = db.Column(db.Integer, default=1, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    approvals = db.relationship('SplitApproval', backref='split_transaction',
                                order_by='SplitApproval.id',
                                cascade='all, delete-orphan')

    def approver_ids(self):
        return [a.user_id for a in self.approvals]

    def __repr__(self):
        return f'<SplitTransaction {self.transaction_ref} {self.status}>'


class SplitApproval(db.Model):
    __tablename__ = 'split_approvals'

    id = db.Column(db.Integer, primary_key=True)
    split_transaction_id = db.Column(db.Integer, db.ForeignKey('split_transactions.id'),
                                     nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    approved_at = db.Column(db.DateTime, default=utcnow)

    # Prevent duplicate approvals
    __table_args__ = (
        db.UniqueConstraint('split_transaction_id', 'user_id', name='unique_split_approval'),
    )


# ============================================================
# REWARDS MODELS
# ============================================================
class Reward(db.Model):
    __tablename__ = 'rewards'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'),
                               unique=True, nullable=False)
    type = db.Column(db.String(20), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    status = db.Column(db.String(20), default='credited', nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)


class RewardsBalance(db.Model):
    """Derived solely from completed transactions; tier follows lifetime_earned."""
    __tablename__ = 'rewards_balances'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    available_balance = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    lifetime_earned = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    lifetime_redeemed = db.Column(MONEY, default=Decimal('0.00'), nullable=False)
    tier = db.Column(db.String(20), default=RewardTier.BRONZE.value, nullable=False)
    next_tier_progress = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class RewardsRedemption(db.Model):
    """Redemption request fulfilled later by an external payout channel."""
    __tablename__ = 'rewards_redemptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default=TransactionStatus.PENDING.value, nullable=False)
    reference = db.Column(db.String(64), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
