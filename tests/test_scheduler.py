"""
Tests for scheduled transfers and the scheduler job

Covers:
1. Owner operations and validation
2. Exactly-once execution per due date
3. Calendar recurrence
4. Retry vs permanent failure
5. Single in-flight run
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from walletcore.extensions import db
from walletcore.models import ScheduledTransfer, ScheduledTransferStatus, Transaction, Wallet
from walletcore.services.scheduled_transfer_service import (
    create_scheduled_transfer, list_scheduled_transfers, pause_scheduled_transfer,
    resume_scheduled_transfer, delete_scheduled_transfer, execute_scheduled_transfer,
    compute_next_execution
)
from walletcore.services.ledger_service import (
    fund_wallet, ValidationError, ConflictError, PermissionDeniedError, NotFoundError
)
from walletcore.signals import notification_requested

BASE = datetime(2030, 1, 1, 9, 0)


def _schedule(sender, recipient, amount=1000, frequency='daily', first_run=None, **kwargs):
    return create_scheduled_transfer(
        user_id=sender.id,
        recipient_email=recipient.email,
        amount=amount,
        frequency=frequency,
        next_execution_date=first_run or BASE + timedelta(hours=1),
        now=BASE,
        **kwargs
    )


def _reload(scheduled_id):
    db.session.expire_all()
    return db.session.get(ScheduledTransfer, scheduled_id)


class TestRecurrence:

    def test_compute_next_execution(self):
        start = datetime(2030, 1, 31, 10, 0)
        assert compute_next_execution(start, 'daily') == datetime(2030, 2, 1, 10, 0)
        assert compute_next_execution(start, 'weekly') == datetime(2030, 2, 7, 10, 0)
        assert compute_next_execution(start, 'biweekly') == datetime(2030, 2, 14, 10, 0)
        assert compute_next_execution(start, 'monthly') == datetime(2030, 2, 28, 10, 0)
        assert compute_next_execution(start, 'one-time') is None

    def test_unknown_frequency(self):
        with pytest.raises(ValidationError):
            compute_next_execution(BASE, 'hourly')

    def test_monthly_schedule_follows_calendar(self, make_user, job):
        """Next dates come from the previous due date, not from when the job ran."""
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob, frequency='monthly',
                              first_run=datetime(2030, 1, 31, 10, 0))

        job.tick(datetime(2030, 1, 31, 10, 37))
        assert _reload(scheduled.id).next_execution_date == datetime(2030, 2, 28, 10, 0)

        job.tick(datetime(2030, 2, 28, 23, 59))
        assert _reload(scheduled.id).next_execution_date == datetime(2030, 3, 28, 10, 0)


class TestOwnerOperations:

    def test_create_validations(self, make_user):
        alice = make_user(balance=10000)
        bob = make_user()

        with pytest.raises(ValidationError):
            _schedule(alice, bob, frequency='yearly')
        with pytest.raises(ValidationError):
            _schedule(alice, bob, first_run=BASE - timedelta(minutes=1))
        with pytest.raises(ValidationError):
            _schedule(alice, bob, amount=50)
        with pytest.raises(ValidationError):
            _schedule(alice, bob, end_date=BASE)
        with pytest.raises(ValidationError):
            _schedule(alice, alice)

    def test_create_for_unregistered_recipient(self, make_user):
        alice = make_user(balance=10000)
        scheduled = create_scheduled_transfer(alice.id, 'later@example.com', 1000, 'weekly',
                                              BASE + timedelta(days=1), now=BASE)
        assert scheduled.recipient_id is None
        assert scheduled.status == ScheduledTransferStatus.ACTIVE.value

    def test_pause_resume_delete(self, make_user):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)

        assert pause_scheduled_transfer(scheduled.id, alice.id).status == 'paused'
        with pytest.raises(ConflictError):
            pause_scheduled_transfer(scheduled.id, alice.id)

        assert resume_scheduled_transfer(scheduled.id, alice.id).status == 'active'
        with pytest.raises(ConflictError):
            resume_scheduled_transfer(scheduled.id, alice.id)

        assert [s.id for s in list_scheduled_transfers(alice.id)] == [scheduled.id]

        delete_scheduled_transfer(scheduled.id, alice.id)
        assert list_scheduled_transfers(alice.id) == []

    def test_only_owner_can_manage(self, make_user):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)

        with pytest.raises(PermissionDeniedError):
            pause_scheduled_transfer(scheduled.id, bob.id)
        with pytest.raises(PermissionDeniedError):
            delete_scheduled_transfer(scheduled.id, bob.id)
        with pytest.raises(NotFoundError):
            delete_scheduled_transfer(9999, alice.id)


class TestExecution:

    def test_due_item_runs_exactly_once(self, make_user, balance_of, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)
        due = BASE + timedelta(hours=1, minutes=5)

        first = job.tick(due)
        second = job.tick(due)

        assert first['success'] is True
        assert first['executed_count'] == 1
        assert second['executed_count'] == 0
        assert balance_of(alice.id) == Decimal("9000.00")
        assert balance_of(bob.id) == Decimal("1000.00")

        item = _reload(scheduled.id)
        assert item.execution_count == 1
        assert item.last_execution_date == due
        assert item.next_execution_date == BASE + timedelta(days=1, hours=1)

    def test_not_yet_due(self, make_user, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)

        result = job.tick(BASE + timedelta(minutes=30))

        assert result['executed_count'] == 0
        assert execute_scheduled_transfer(scheduled.id, BASE + timedelta(minutes=30)) is None

    def test_paused_item_is_skipped(self, make_user, balance_of, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)
        pause_scheduled_transfer(scheduled.id, alice.id)

        result = job.tick(BASE + timedelta(hours=2))

        assert result['executed_count'] == 0
        assert balance_of(alice.id) == Decimal("10000.00")

    def test_one_time_completes(self, make_user, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob, frequency='one-time')

        job.tick(BASE + timedelta(hours=2))
        job.tick(BASE + timedelta(days=3))

        item = _reload(scheduled.id)
        assert item.status == ScheduledTransferStatus.COMPLETED.value
        assert item.execution_count == 1

    def test_end_date_completes_schedule(self, make_user, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob, end_date=BASE + timedelta(days=1, hours=12))

        job.tick(BASE + timedelta(hours=1))
        job.tick(BASE + timedelta(days=1, hours=1))

        item = _reload(scheduled.id)
        assert item.execution_count == 2
        assert item.status == ScheduledTransferStatus.COMPLETED.value

    def test_recipient_resolved_when_they_join_later(self, make_user, job, balance_of):
        alice = make_user(balance=10000)
        scheduled = create_scheduled_transfer(alice.id, 'user2@example.com', 1000, 'daily',
                                              BASE + timedelta(hours=1), now=BASE)
        newcomer = make_user()

        job.tick(BASE + timedelta(hours=1))

        assert newcomer.email == 'user2@example.com'
        assert balance_of(newcomer.id) == Decimal("1000.00")
        assert _reload(scheduled.id).recipient_id == newcomer.id

    def test_debit_row_records_schedule(self, make_user, job):
        alice = make_user(balance=10000)
        bob = make_user()
        scheduled = _schedule(alice, bob)

        result = job.tick(BASE + timedelta(hours=1))

        debit = Transaction.query.filter_by(reference=result['executed_transfers'][0]).one()
        assert debit.meta['scheduled_transfer_id'] == scheduled.id
        assert debit.meta['recipient_credited'] is True


class TestFailures:

    def test_insufficient_balance_is_retried(self, make_user, balance_of, job):
        alice = make_user(balance=500)
        bob = make_user()
        scheduled = _schedule(alice, bob, amount=1000)

        result = job.tick(BASE + timedelta(hours=1))

        assert result['executed_count'] == 0
        assert len(result['failures']) == 1
        assert result['failures'][0]['scheduled_transfer_id'] == scheduled.id
        assert result['failures'][0]['retry'] is True
        item = _reload(scheduled.id)
        assert item.status == ScheduledTransferStatus.ACTIVE.value
        assert item.execution_count == 0
        assert balance_of(alice.id) == Decimal("500.00")

        fund_wallet(alice.id, 1000)
        retry = job.tick(BASE + timedelta(hours=2))
        assert retry['executed_count'] == 1
        assert balance_of(bob.id) == Decimal("1000.00")

    def test_permanent_failure_marks_item_and_notifies(self, make_user, job):
        alice = make_user(balance=10000)
        bob = make_user()
        carol = make_user()
        healthy = _schedule(bob, carol, amount=100)
        broken = _schedule(alice, bob)
        fund_wallet(bob.id, 1000)
        db.session.query(Wallet).filter_by(user_id=alice.id).update({Wallet.is_active: False})
        db.session.commit()

        events = []

        def receiver(event, **extra):
            events.append(event)

        with notification_requested.connected_to(receiver):
            result = job.tick(BASE + timedelta(hours=1))

        assert result['executed_count'] == 1
        assert [f['retry'] for f in result['failures']] == [False]

        item = _reload(broken.id)
        assert item.status == ScheduledTransferStatus.FAILED.value
        assert 'failure_reason' in item.meta
        assert _reload(healthy.id).execution_count == 1
        assert any(e.user_id == alice.id and e.title == "Scheduled transfer failed" for e in events)


class TestJobRunner:

    def test_concurrent_run_is_rejected(self, job):
        job._run_lock.acquire()
        try:
            assert job.get_status() == 'running'
            assert job.run_now() == {'success': False, 'error': 'Job is already running'}
        finally:
            job._run_lock.release()
        assert job.get_status() == 'idle'

    def test_run_now_reports_summary(self, app, job):
        result = job.run_now()
        assert result == {
            'success': True,
            'executed_count': 0,
            'executed_transfers': [],
            'failures': [],
        }

    def test_start_and_stop(self, app, job):
        scheduler = job.start()
        try:
            assert scheduler.running
            assert job.next_run_time() is not None
        finally:
            job.stop()
        assert job.next_run_time() is None
