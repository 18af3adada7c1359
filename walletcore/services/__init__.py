"""
Services Package
================

Business logic layer for the wallet ledger core.

All balance-affecting and membership operations are handled here.
Callers use these services, never the models directly.
"""

from walletcore.services.ledger_service import (
    create_user,
    create_wallet,
    find_user_by_email,
    find_user_by_id,
    get_wallet,
    fund_wallet,
    get_transaction,
    get_transaction_history,
    get_transaction_summary,
    reconcile_wallet_balance,
    LedgerError,
    ValidationError,
    InsufficientFundsError,
    NotFoundError,
    ConflictError,
    PermissionDeniedError,
    IntegrityFailure
)

from walletcore.services.transfer_service import (
    initiate_transfer,
    verify_transfer,
    get_transfer_status
)

from walletcore.services.scheduled_transfer_service import (
    create_scheduled_transfer,
    list_scheduled_transfers,
    pause_scheduled_transfer,
    resume_scheduled_transfer,
    delete_scheduled_transfer,
    run_scheduled_transfers,
    compute_next_execution
)

from walletcore.services.savings_service import (
    create_circle,
    contribute as contribute_to_circle,
    get_circle,
    list_user_circles
)

from walletcore.services.membership_service import (
    join_circle,
    leave_circle,
    delete_circle,
    join_group
)

from walletcore.services.split_payment_service import (
    create_group,
    contribute as contribute_to_group,
    make_payment,
    approve_payment,
    calculate_debts,
    calculate_fair_shares,
    get_group_statistics,
    Debt
)

from walletcore.services.rewards_service import (
    calculate_reward_amount,
    determine_reward_tier,
    create_reward_for_transaction,
    redeem_rewards,
    get_user_rewards_info
)

from walletcore.services.notification_service import (
    notify,
    NotificationEvent
)
