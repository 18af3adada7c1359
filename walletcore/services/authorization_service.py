"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

All membership and ownership checks live here.
Each check returns (allowed, reason); services turn a refusal into
PermissionDeniedError or ConflictError through require_authorization.

Callers load the resource first so a missing resource is reported as
NotFoundError, not as a permission problem.
"""

from walletcore.models import ScheduledTransferStatus
from walletcore.services.ledger_service import PermissionDeniedError


# ============================================================
# SCHEDULED TRANSFER CHECKS
# ============================================================

def can_manage_scheduled_transfer(user_id, scheduled):
    """Only the owner may pause, resume or delete a scheduled transfer."""
    if scheduled.user_id != user_id:
        return False, "You do not own this scheduled transfer"
    return True, None


def can_resume_scheduled_transfer(user_id, scheduled):
    allowed, reason = can_manage_scheduled_transfer(user_id, scheduled)
    if not allowed:
        return allowed, reason
    if scheduled.status != ScheduledTransferStatus.PAUSED.value:
        return False, f"Only paused transfers can be resumed (status is {scheduled.status})"
    return True, None


# ============================================================
# SAVINGS CIRCLE CHECKS
# ============================================================

def is_circle_member(user_id, circle):
    return circle.get_member(user_id) is not None


def can_leave_circle(user_id, circle):
    """
    Requirements:
    - Creator cannot leave (must delete instead)
    - User must be a member
    - While the circle is active the member must have no money in it,
      neither contributed nor received
    """
    if circle.creator_id == user_id:
        return False, "Circle creator cannot leave the circle. Delete it instead."

    member = circle.get_member(user_id)
    if not member:
        return False, "You are not a member of this savings circle"

    if circle.is_active and (member.total_contributed > 0 or member.total_received > 0):
        return False, "You cannot leave an active circle after contributing or receiving a payout"

    return True, None


def can_delete_circle(user_id, circle):
    """
    Requirements:
    - Only the creator can delete
    - No completed cycle on an active circle
    - No contribution currently held for the running cycle
    """
    if circle.creator_id != user_id:
        return False, "Only the creator can delete the savings circle"

    if circle.is_active and circle.current_cycle > 0:
        return False, "Cannot delete an active savings circle with completed cycles"

    if any(m.has_paid_current_cycle for m in circle.members):
        return False, "Cannot delete a savings circle holding contributions for the current cycle"

    return True, None


# ============================================================
# SPLIT PAYMENT CHECKS
# ============================================================

def can_use_split_group(user_id, group):
    if not group.is_active:
        return False, "This split payment group is no longer active"
    if not group.is_member(user_id):
        return False, "User is not a member of this group"
    return True, None


# ============================================================
# HELPER
# ============================================================

def require_authorization(check_func, *args, error_class=PermissionDeniedError):
    """
    Raise if the check refuses.

    Usage:
        require_authorization(can_delete_circle, user_id, circle)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason)
    return True
