# marketpay/scheduler.py
"""
Payout scheduler:
  - one APScheduler cron job per process fires the payout sweep
  - the trigger follows payout_frequency (daily / weekly Monday /
    biweekly Monday of odd ISO weeks / monthly on the 1st), the same
    calendar the payout estimator projects
  - overlapping fires are skipped, not queued

The busy guard is process-local. Two replicas can still run sweeps at the
same time; ledger claiming keeps them from paying the same rows twice.
"""
import logging
import threading
from datetime import timedelta
from time import perf_counter
from typing import Callable, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from marketpay.metrics import sweep_latency, sweeps_skipped
from marketpay.models import PaymentMethod
from marketpay.platform_settings import load_payout_config
from marketpay.processor import PaymentProcessor
from marketpay.schemas import SweepReport
from marketpay.services.payouts import DEFAULT_STALE_AFTER, run_sweep

log = logging.getLogger(__name__)

_SWEEP_JOB_ID = "payout_sweep_v1"
_STARTUP_JOB_ID = "payout_sweep_startup"


class SingleFlight:
    """Non-blocking acquire is the compare-and-set: only one caller gets True."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()


def trigger_for(frequency: str, timezone: str = "UTC") -> CronTrigger:
    if frequency == "daily":
        return CronTrigger(hour=0, minute=0, timezone=timezone)
    if frequency == "biweekly":
        return CronTrigger(week="*/2", day_of_week="mon", hour=0, minute=0, timezone=timezone)
    if frequency == "monthly":
        return CronTrigger(day=1, hour=0, minute=0, timezone=timezone)
    return CronTrigger(day_of_week="mon", hour=0, minute=0, timezone=timezone)


class PayoutScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        processors: Optional[Mapping[PaymentMethod, PaymentProcessor]] = None,
        timezone: str = "UTC",
        instant_payouts: bool = False,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self.session_factory = session_factory
        self.processors = processors or {}
        self.timezone = timezone
        self.instant_payouts = instant_payouts
        self.stale_after = stale_after
        self.guard = SingleFlight()
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self):
        """Arm the timer from payout_frequency and queue one sweep to run right away."""
        with self.session_factory() as db:
            frequency = load_payout_config(db).payout_frequency

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone=self.timezone)
            self._scheduler.start()

        self._scheduler.add_job(
            func=self._sweep_job,
            trigger=trigger_for(frequency, self.timezone),
            id=_SWEEP_JOB_ID,
            name="marketplace payout sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        # no trigger = run once now, on the scheduler's thread
        self._scheduler.add_job(
            func=self._sweep_job,
            id=_STARTUP_JOB_ID,
            name="startup payout sweep",
            replace_existing=True,
        )
        log.info("Payout scheduler started with %s frequency", frequency)

    def stop(self):
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            log.info("Payout scheduler stopped.")

    def run_scheduled_sweep(self) -> Optional[SweepReport]:
        """Run one sweep unless one is already running in this process (then None)."""
        if not self.guard.try_acquire():
            sweeps_skipped.labels("busy").inc()
            log.info("Payout processing already in progress, skipping...")
            return None

        start = perf_counter()
        try:
            with self.session_factory() as db:
                return run_sweep(
                    db, self.processors,
                    instant_payouts=self.instant_payouts,
                    stale_after=self.stale_after,
                )
        finally:
            self.guard.release()
            sweep_latency.observe(perf_counter() - start)

    def _sweep_job(self) -> Optional[SweepReport]:
        try:
            return self.run_scheduled_sweep()
        except Exception as e:
            log.exception("Error processing scheduled payouts: %s", e)
            return None

    def get_status(self):
        status = {"running": self.running, "busy": self.guard.busy, "next_run_time": None}
        if self._scheduler is not None:
            job = self._scheduler.get_job(_SWEEP_JOB_ID)
            if job is not None and job.next_run_time:
                status["next_run_time"] = job.next_run_time.isoformat()
        return status
