"""
Hourly job that executes due scheduled transfers.

Only one run may be in flight per process: a second trigger (interval or
manual) while a run is active returns immediately instead of queueing.
"""

import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import has_app_context

from walletcore.models import utcnow
from walletcore.services.scheduled_transfer_service import run_scheduled_transfers

logger = logging.getLogger(__name__)

JOB_ID = 'process_scheduled_transfers'


class ScheduledTransferJob:

    def __init__(self, app=None):
        self.app = None
        self.scheduler = None
        self._run_lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions['scheduled_transfer_job'] = self

    # ============================================================
    # RUNS
    # ============================================================

    def tick(self, now=None):
        """Process everything due at `now`. Never raises."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Scheduled transfer job is already running, skipping this run")
            return {'success': False, 'error': 'Job is already running'}

        try:
            if has_app_context():
                return run_scheduled_transfers(now or utcnow())
            with self.app.app_context():
                return run_scheduled_transfers(now or utcnow())
        except Exception as e:
            logger.exception("Scheduled transfer job failed")
            return {'success': False, 'error': str(e)}
        finally:
            self._run_lock.release()

    def run_now(self):
        logger.info("Manually running scheduled transfer job")
        return self.tick(utcnow())

    def _scheduled_run(self):
        result = self.tick()
        if result.get('success'):
            logger.info("Scheduled transfer job: %s executed, %s failed",
                        result['executed_count'], len(result['failures']))

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start(self):
        if self.scheduler is not None and self.scheduler.running:
            logger.info("Scheduled transfer job already started")
            return self.scheduler

        minutes = self.app.config.get('SCHEDULER_INTERVAL_MINUTES', 60)
        self.scheduler = BackgroundScheduler(timezone='UTC')
        self.scheduler.add_job(
            func=self._scheduled_run,
            trigger=IntervalTrigger(minutes=minutes),
            id=JOB_ID,
            name='Process scheduled transfers',
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Scheduled transfer job started (every %s minutes)", minutes)
        return self.scheduler

    def stop(self):
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduled transfer job stopped")
        self.scheduler = None

    def get_status(self):
        return 'running' if self._run_lock.locked() else 'idle'

    def next_run_time(self):
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
