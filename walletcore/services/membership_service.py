"""
MEMBERSHIP SERVICE
==================

Handles:
- Joining savings circles and split payment groups by invite code
- Leaving a savings circle (with money-in-circle checks)
- Deleting a savings circle (creator only)
"""

import logging

from walletcore.extensions import db
from walletcore.models import SavingsCircle, SplitPaymentGroup, SplitGroupMember, utcnow
from walletcore.services.ledger_service import (
    atomic_unit, NotFoundError, ConflictError, PermissionDeniedError
)
from walletcore.services.authorization_service import (
    require_authorization, is_circle_member, can_leave_circle, can_delete_circle
)
from walletcore.services.savings_service import (
    get_circle_or_404, process_payout_if_ready, new_member, announce_payout
)
from walletcore.services import notification_service

logger = logging.getLogger(__name__)


# ============================================================
# SAVINGS CIRCLES
# ============================================================

def join_circle(invite_code, user_id):
    """Join at the end of the rotation (position = current member count)."""
    with atomic_unit("join savings circle"):
        circle = SavingsCircle.query.filter_by(
            invite_code=(invite_code or '').strip().upper()
        ).with_for_update().first()
        if not circle:
            raise NotFoundError("Invalid invite code")
        if not circle.is_active:
            raise ConflictError("This savings circle is no longer active")
        if is_circle_member(user_id, circle):
            raise ConflictError("You are already a member of this savings circle")

        member = new_member(user_id, position=len(circle.members))
        circle.members.append(member)

    logger.info("User %s joined circle %s at position %s", user_id, circle.id, member.position)

    notification_service.notify(
        user_id=circle.creator_id,
        type=notification_service.SAVINGS,
        title="New circle member",
        message=f"A new member joined {circle.name}",
    )
    return circle


def leave_circle(circle_id, user_id):
    """
    Member leaves a circle.

    STRICT RULES:
    - Creator cannot leave
    - On an active circle only members with no money in it may leave
    - Remaining positions are re-packed to 0..n-1
    """
    with atomic_unit("leave savings circle"):
        circle = get_circle_or_404(circle_id, lock=True)
        if not is_circle_member(user_id, circle):
            raise PermissionDeniedError("You are not a member of this savings circle")
        require_authorization(can_leave_circle, user_id, circle, error_class=ConflictError)

        leaving = circle.get_member(user_id)
        payout_position = circle.current_payout_position
        if leaving.position < payout_position:
            payout_position -= 1

        circle.members.remove(leaving)
        db.session.flush()

        remaining = sorted(circle.members, key=lambda m: m.position)
        for position, member in enumerate(remaining):
            member.position = position
        circle.current_payout_position = payout_position if payout_position < len(remaining) else 0

        # The leaver may have been the only one holding up this cycle
        payout = process_payout_if_ready(circle)

    logger.info("User %s left circle %s", user_id, circle_id)

    if payout is not None:
        announce_payout(circle, payout)
    return True


def delete_circle(circle_id, user_id):
    with atomic_unit("delete savings circle"):
        circle = get_circle_or_404(circle_id, lock=True)
        if circle.creator_id != user_id:
            raise PermissionDeniedError("Only the creator can delete the savings circle")
        require_authorization(can_delete_circle, user_id, circle, error_class=ConflictError)
        db.session.delete(circle)

    logger.info("Circle %s deleted by user %s", circle_id, user_id)
    return True


# ============================================================
# SPLIT PAYMENT GROUPS
# ============================================================

def join_group(invite_code, user_id):
    with atomic_unit("join split group"):
        group = SplitPaymentGroup.query.filter_by(
            invite_code=(invite_code or '').strip().upper()
        ).first()
        if not group:
            raise NotFoundError("Invalid invite code")
        if not group.is_active:
            raise ConflictError("This split payment group is no longer active")
        if group.is_member(user_id):
            raise ConflictError("You are already a member of this group")

        group.members.append(SplitGroupMember(user_id=user_id, joined_at=utcnow()))

    logger.info("User %s joined split group %s", user_id, group.id)
    return group
