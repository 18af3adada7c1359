"""
SCHEDULED TRANSFER SERVICE
==========================

Recurring payment instructions and the per-item execution the scheduler
job drives.

CRITICAL BUSINESS RULES:
1. Each due item runs in its own unit; one failure never aborts the rest
2. The item is reloaded and re-checked (active AND due) before money moves
3. Insufficient balance keeps the item active for the next run
4. Any other failure marks the item failed and notifies the owner
5. The next date is computed from the previous next date, never from "now"
"""

import logging

from dateutil.relativedelta import relativedelta
from flask import current_app

from walletcore.extensions import db
from walletcore.models import ScheduledTransfer, ScheduledTransferStatus, Frequency, utcnow
from walletcore.services.ledger_service import (
    atomic_unit, to_amount, generate_unique_reference, get_wallet, find_user_by_email,
    find_user_by_id, ValidationError, NotFoundError, ConflictError, InsufficientFundsError,
    LedgerError
)
from walletcore.services.authorization_service import (
    require_authorization, can_manage_scheduled_transfer, can_resume_scheduled_transfer
)
from walletcore.services.transfer_service import move_funds, announce_transfer
from walletcore.services import notification_service

logger = logging.getLogger(__name__)

SCHEDULE_FREQUENCIES = (
    Frequency.ONE_TIME.value,
    Frequency.DAILY.value,
    Frequency.WEEKLY.value,
    Frequency.MONTHLY.value,
)

_STEPS = {
    Frequency.DAILY.value: relativedelta(days=1),
    Frequency.WEEKLY.value: relativedelta(weeks=1),
    Frequency.BIWEEKLY.value: relativedelta(weeks=2),
    Frequency.MONTHLY.value: relativedelta(months=1),
}


def compute_next_execution(previous, frequency):
    """
    Next run date from the previous scheduled date.

    relativedelta clamps month ends (Jan 31 -> Feb 28) without drifting the
    time of day. One-time schedules have no next date.
    """
    if frequency == Frequency.ONE_TIME.value:
        return None
    step = _STEPS.get(frequency)
    if step is None:
        raise ValidationError(f"Invalid frequency: {frequency}")
    return previous + step


# ============================================================
# OWNER OPERATIONS
# ============================================================

def create_scheduled_transfer(user_id, recipient_email, amount, frequency, next_execution_date,
                              description='', end_date=None, now=None):
    now = now or utcnow()

    if not recipient_email:
        raise ValidationError("Recipient email is required")
    if frequency not in SCHEDULE_FREQUENCIES:
        raise ValidationError(
            f"Invalid frequency. Must be one of: {', '.join(SCHEDULE_FREQUENCIES)}"
        )

    amount = to_amount(amount)
    minimum = current_app.config['TRANSFER_MIN_AMOUNT']
    maximum = current_app.config['TRANSFER_MAX_AMOUNT']
    if amount < minimum:
        raise ValidationError(f"Minimum transfer amount is {minimum}")
    if amount > maximum:
        raise ValidationError(f"Maximum transfer amount is {maximum}")

    if next_execution_date is None or next_execution_date <= now:
        raise ValidationError("Execution date must be in the future")
    if end_date is not None and end_date <= next_execution_date:
        raise ValidationError("End date must be after the first execution date")

    wallet = get_wallet(user_id)
    recipient = find_user_by_email(recipient_email)
    if recipient is not None and recipient.id == user_id:
        raise ValidationError("You cannot schedule a transfer to yourself")

    with atomic_unit("create scheduled transfer"):
        scheduled = ScheduledTransfer(
            user_id=user_id,
            recipient_id=recipient.id if recipient else None,
            recipient_email=recipient_email.strip().lower(),
            amount=amount,
            currency=wallet.currency,
            description=description or '',
            frequency=frequency,
            next_execution_date=next_execution_date,
            end_date=end_date,
            execution_count=0,
            status=ScheduledTransferStatus.ACTIVE.value,
            meta={},
        )
        db.session.add(scheduled)

    logger.info("Scheduled transfer %s created by user %s (%s, %s)",
                scheduled.id, user_id, frequency, amount)
    return scheduled


def get_scheduled_transfer(scheduled_id):
    scheduled = db.session.get(ScheduledTransfer, scheduled_id)
    if not scheduled:
        raise NotFoundError("Scheduled transfer not found")
    return scheduled


def list_scheduled_transfers(user_id, status=None):
    query = ScheduledTransfer.query.filter_by(user_id=user_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(ScheduledTransfer.next_execution_date.asc()).all()


def pause_scheduled_transfer(scheduled_id, user_id):
    with atomic_unit("pause scheduled transfer"):
        scheduled = get_scheduled_transfer(scheduled_id)
        require_authorization(can_manage_scheduled_transfer, user_id, scheduled)
        if scheduled.status != ScheduledTransferStatus.ACTIVE.value:
            raise ConflictError(f"Only active transfers can be paused (status is {scheduled.status})")
        scheduled.status = ScheduledTransferStatus.PAUSED.value
    return scheduled


def resume_scheduled_transfer(scheduled_id, user_id):
    with atomic_unit("resume scheduled transfer"):
        scheduled = get_scheduled_transfer(scheduled_id)
        require_authorization(can_manage_scheduled_transfer, user_id, scheduled)
        require_authorization(can_resume_scheduled_transfer, user_id, scheduled,
                              error_class=ConflictError)
        scheduled.status = ScheduledTransferStatus.ACTIVE.value
    return scheduled


def delete_scheduled_transfer(scheduled_id, user_id):
    with atomic_unit("delete scheduled transfer"):
        scheduled = get_scheduled_transfer(scheduled_id)
        require_authorization(can_manage_scheduled_transfer, user_id, scheduled)
        db.session.delete(scheduled)
    logger.info("Scheduled transfer %s deleted by user %s", scheduled_id, user_id)
    return True


# ============================================================
# EXECUTION
# ============================================================

def find_due_transfer_ids(now):
    rows = db.session.query(ScheduledTransfer.id).filter(
        ScheduledTransfer.status == ScheduledTransferStatus.ACTIVE.value,
        ScheduledTransfer.next_execution_date <= now,
    ).order_by(ScheduledTransfer.next_execution_date.asc(), ScheduledTransfer.id.asc()).all()
    return [row.id for row in rows]


def execute_scheduled_transfer(scheduled_id, now=None):
    """
    Run one due item.

    Returns: dict describing the execution, or None when the item was
    paused, deleted or already advanced since it was selected.
    """
    now = now or utcnow()

    with atomic_unit("scheduled transfer execution"):
        scheduled = ScheduledTransfer.query.filter_by(id=scheduled_id).with_for_update().first()
        if (scheduled is None
                or scheduled.status != ScheduledTransferStatus.ACTIVE.value
                or scheduled.next_execution_date > now):
            logger.info("Scheduled transfer %s no longer due, skipping", scheduled_id)
            return None

        sender_wallet = get_wallet(scheduled.user_id, lock=True)
        recipient = find_user_by_id(scheduled.recipient_id) or find_user_by_email(scheduled.recipient_email)

        sender_transaction, recipient_transaction = move_funds(
            sender_wallet=sender_wallet,
            recipient=recipient,
            amount=scheduled.amount,
            reference=generate_unique_reference(),
            description=scheduled.description or f"Scheduled transfer to {scheduled.recipient_email}",
            metadata={
                'scheduled_transfer_id': scheduled.id,
                'recipient_email': scheduled.recipient_email,
                'recipient_id': recipient.id if recipient else None,
            },
        )

        if recipient is not None and scheduled.recipient_id is None:
            scheduled.recipient_id = recipient.id

        previous = scheduled.next_execution_date
        scheduled.execution_count += 1
        scheduled.last_execution_date = now

        next_date = compute_next_execution(previous, scheduled.frequency)
        if next_date is None or (scheduled.end_date is not None and next_date > scheduled.end_date):
            scheduled.status = ScheduledTransferStatus.COMPLETED.value
        else:
            scheduled.next_execution_date = next_date

    logger.info("Scheduled transfer %s executed (%s), run #%s",
                scheduled_id, sender_transaction.reference, scheduled.execution_count)

    announce_transfer(sender_transaction, recipient_transaction)

    return {
        'scheduled_transfer_id': scheduled_id,
        'reference': sender_transaction.reference,
        'amount': sender_transaction.amount,
        'recipient_credited': recipient_transaction is not None,
        'status': scheduled.status,
        'next_execution_date': scheduled.next_execution_date,
    }


def mark_scheduled_transfer_failed(scheduled_id, reason):
    with atomic_unit("scheduled transfer failure bookkeeping"):
        scheduled = ScheduledTransfer.query.filter_by(id=scheduled_id).with_for_update().first()
        if scheduled is None or scheduled.status != ScheduledTransferStatus.ACTIVE.value:
            return None
        scheduled.status = ScheduledTransferStatus.FAILED.value
        scheduled.meta = dict(scheduled.meta or {}, failure_reason=reason)
        owner_id = scheduled.user_id
        recipient_email = scheduled.recipient_email

    notification_service.notify(
        user_id=owner_id,
        type=notification_service.TRANSFER,
        title="Scheduled transfer failed",
        message=f"Your scheduled transfer to {recipient_email} failed: {reason}",
    )
    return scheduled


def run_scheduled_transfers(now=None):
    """
    Execute every due item once.

    Returns: {success, executed_count, executed_transfers, failures}
    """
    now = now or utcnow()
    due_ids = find_due_transfer_ids(now)
    logger.info("Found %s scheduled transfers due at %s", len(due_ids), now)

    executed = []
    failures = []

    for scheduled_id in due_ids:
        try:
            result = execute_scheduled_transfer(scheduled_id, now)
            if result is not None:
                executed.append(result)
        except InsufficientFundsError as e:
            logger.warning("Scheduled transfer %s skipped: %s", scheduled_id, e)
            failures.append({'scheduled_transfer_id': scheduled_id, 'error': str(e), 'retry': True})
        except LedgerError as e:
            logger.error("Scheduled transfer %s failed permanently: %s", scheduled_id, e)
            try:
                mark_scheduled_transfer_failed(scheduled_id, str(e))
            except LedgerError:
                logger.exception("Could not mark scheduled transfer %s as failed", scheduled_id)
            failures.append({'scheduled_transfer_id': scheduled_id, 'error': str(e), 'retry': False})

    logger.info("Scheduled transfer run finished: %s executed, %s failed",
                len(executed), len(failures))

    return {
        'success': True,
        'executed_count': len(executed),
        'executed_transfers': [r['reference'] for r in executed],
        'failures': failures,
    }
