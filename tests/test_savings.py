"""
Tests for savings circles

Covers:
1. Contribution and payout scenario
2. Full rotation: every member receives exactly once
3. Contribution guards
4. Join / leave / delete rules
"""

import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from walletcore.extensions import db
from walletcore.models import SavingsCircle, Transaction, TransactionType, utcnow
from walletcore.services.savings_service import (
    create_circle, contribute, get_circle, list_user_circles
)
from walletcore.services.membership_service import join_circle, leave_circle, delete_circle
from walletcore.services.ledger_service import (
    ValidationError, InsufficientFundsError, NotFoundError, ConflictError, PermissionDeniedError
)


@pytest.fixture
def circle_of_three(make_user):
    alice = make_user(balance=10000)
    bob = make_user(balance=10000)
    carol = make_user(balance=10000)
    circle = create_circle(alice.id, "Market women", 1000, 'monthly', total_cycles=3,
                           start_date=datetime(2030, 1, 1, 8, 0))
    join_circle(circle.invite_code, bob.id)
    join_circle(circle.invite_code, carol.id)
    return circle, [alice, bob, carol]


def _circle(circle_id):
    db.session.expire_all()
    return db.session.get(SavingsCircle, circle_id)


class TestCreateCircle:

    def test_creator_is_first_member(self, make_user):
        alice = make_user(balance=1000)
        circle = create_circle(alice.id, "Ajo", 500, 'weekly', total_cycles=4,
                               start_date=utcnow() + timedelta(days=1))

        assert len(circle.invite_code) == 8
        assert re.fullmatch(r"[A-Z0-9]{8}", circle.invite_code)
        assert [(m.user_id, m.position) for m in circle.members] == [(alice.id, 0)]
        assert circle.current_cycle == 0

    def test_validation(self, make_user):
        alice = make_user()
        future = utcnow() + timedelta(days=1)

        with pytest.raises(ValidationError):
            create_circle(alice.id, "Ajo", 50, 'weekly', 4, future)
        with pytest.raises(ValidationError):
            create_circle(alice.id, "Ajo", 500, 'yearly', 4, future)
        with pytest.raises(ValidationError):
            create_circle(alice.id, "Ajo", 500, 'weekly', 0, future)
        with pytest.raises(ValidationError):
            create_circle(alice.id, "Ajo", 500, 'weekly', 4, utcnow() - timedelta(days=1))


class TestContributions:

    def test_last_contribution_triggers_payout(self, circle_of_three, balance_of):
        """A, B and C contribute 1,000 each; A (position 0) receives 3,000."""
        circle, (alice, bob, carol) = circle_of_three

        first = contribute(circle.id, alice.id)
        contribute(circle.id, bob.id)
        assert first['payout_processed'] is False
        assert balance_of(alice.id) == Decimal("9000.00")

        last = contribute(circle.id, carol.id)

        assert last['payout_processed'] is True
        assert last['payout']['user_id'] == alice.id
        assert last['payout']['amount'] == Decimal("3000.00")
        assert balance_of(alice.id) == Decimal("12000.00")
        assert balance_of(bob.id) == Decimal("9000.00")
        assert balance_of(carol.id) == Decimal("9000.00")

        state = _circle(circle.id)
        assert state.current_cycle == 1
        assert state.current_payout_position == 1
        assert state.next_contribution_date == datetime(2030, 2, 1, 8, 0)
        assert not any(m.has_paid_current_cycle for m in state.members)
        assert state.get_member(alice.id).has_received_current_cycle is True
        assert state.get_member(alice.id).total_received == Decimal("3000.00")

        payout_tx = Transaction.query.filter_by(reference=last['payout']['reference']).one()
        assert payout_tx.type == TransactionType.SAVINGS_PAYOUT.value

    def test_full_rotation(self, circle_of_three, balance_of):
        """Over total_cycles every member receives exactly one payout."""
        circle, members = circle_of_three
        recipients = []

        for _ in range(3):
            for member in members:
                result = contribute(circle.id, member.id)
            recipients.append(result['payout']['user_id'])

        assert sorted(recipients) == sorted(m.id for m in members)
        assert result['payout']['is_completed'] is True

        state = _circle(circle.id)
        assert state.is_active is False
        assert state.current_cycle == 3
        assert state.end_date is not None
        for member in members:
            assert balance_of(member.id) == Decimal("10000.00")

        with pytest.raises(ConflictError):
            contribute(circle.id, members[0].id)

    def test_cannot_contribute_twice_per_cycle(self, circle_of_three, balance_of):
        circle, (alice, _, _) = circle_of_three
        contribute(circle.id, alice.id)

        with pytest.raises(ConflictError):
            contribute(circle.id, alice.id)
        assert balance_of(alice.id) == Decimal("9000.00")

    def test_non_member(self, circle_of_three, make_user):
        circle, _ = circle_of_three
        outsider = make_user(balance=5000)
        with pytest.raises(PermissionDeniedError):
            contribute(circle.id, outsider.id)

    def test_insufficient_balance_leaves_no_trace(self, circle_of_three, make_user):
        circle, _ = circle_of_three
        poor = make_user(balance=500)
        join_circle(circle.invite_code, poor.id)

        with pytest.raises(InsufficientFundsError):
            contribute(circle.id, poor.id)

        member = _circle(circle.id).get_member(poor.id)
        assert member.has_paid_current_cycle is False
        assert member.total_contributed == Decimal("0.00")

    def test_missing_circle(self, make_user):
        alice = make_user()
        with pytest.raises(NotFoundError):
            contribute(404, alice.id)


class TestMembership:

    def test_join_appends_position(self, circle_of_three):
        circle, members = circle_of_three
        state = _circle(circle.id)
        assert [m.position for m in state.members] == [0, 1, 2]
        assert [m.user_id for m in state.members] == [m.id for m in members]

    def test_join_twice_or_bad_code(self, circle_of_three):
        circle, (_, bob, _) = circle_of_three
        with pytest.raises(ConflictError):
            join_circle(circle.invite_code, bob.id)
        with pytest.raises(NotFoundError):
            join_circle("NOPE0000", bob.id)

    def test_join_code_is_case_insensitive(self, make_user, circle_of_three):
        circle, _ = circle_of_three
        dave = make_user()
        join_circle(circle.invite_code.lower(), dave.id)
        assert _circle(circle.id).get_member(dave.id).position == 3

    def test_creator_cannot_leave(self, circle_of_three):
        circle, (alice, _, _) = circle_of_three
        with pytest.raises(ConflictError):
            leave_circle(circle.id, alice.id)

    def test_member_with_money_in_circle_cannot_leave(self, circle_of_three):
        circle, (_, bob, _) = circle_of_three
        contribute(circle.id, bob.id)
        with pytest.raises(ConflictError):
            leave_circle(circle.id, bob.id)

    def test_leave_repacks_positions(self, circle_of_three):
        circle, (alice, bob, carol) = circle_of_three
        leave_circle(circle.id, bob.id)

        state = _circle(circle.id)
        assert [(m.user_id, m.position) for m in state.members] == [(alice.id, 0), (carol.id, 1)]

    def test_leaving_last_unpaid_member_releases_payout(self, circle_of_three, balance_of):
        circle, (alice, bob, carol) = circle_of_three
        contribute(circle.id, alice.id)
        contribute(circle.id, bob.id)

        leave_circle(circle.id, carol.id)

        state = _circle(circle.id)
        assert state.current_cycle == 1
        assert balance_of(alice.id) == Decimal("11000.00")

    def test_non_member_cannot_leave(self, circle_of_three, make_user):
        circle, _ = circle_of_three
        with pytest.raises(PermissionDeniedError):
            leave_circle(circle.id, make_user().id)


class TestDeleteCircle:

    def test_only_creator(self, circle_of_three):
        circle, (_, bob, _) = circle_of_three
        with pytest.raises(PermissionDeniedError):
            delete_circle(circle.id, bob.id)

    def test_blocked_while_contributions_held(self, circle_of_three):
        circle, (alice, bob, _) = circle_of_three
        contribute(circle.id, bob.id)
        with pytest.raises(ConflictError):
            delete_circle(circle.id, alice.id)

    def test_blocked_after_completed_cycle(self, circle_of_three):
        circle, members = circle_of_three
        for member in members:
            contribute(circle.id, member.id)
        with pytest.raises(ConflictError):
            delete_circle(circle.id, members[0].id)

    def test_delete_fresh_circle(self, circle_of_three):
        circle, (alice, _, _) = circle_of_three
        circle_id = circle.id
        delete_circle(circle_id, alice.id)
        assert _circle(circle_id) is None


class TestCircleViews:

    def test_private_circle_hidden_from_outsiders(self, circle_of_three, make_user):
        circle, (alice, _, _) = circle_of_three
        summary = get_circle(circle.id, alice.id)

        assert summary['payout_amount'] == Decimal("3000.00")
        assert summary['next_payout_user_id'] == alice.id
        with pytest.raises(PermissionDeniedError):
            get_circle(circle.id, make_user().id)

    def test_list_user_circles(self, circle_of_three):
        circle, (_, bob, _) = circle_of_three
        assert [c['id'] for c in list_user_circles(bob.id)] == [circle.id]
