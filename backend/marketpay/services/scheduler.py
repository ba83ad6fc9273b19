"""
APScheduler Configuration for Maintenance Jobs

Runs the janitor jobs in the background:
- cleanup_webhook_events: drops dedup records past the retention window
- expire_pending_intents: cancels intents that never got a confirmation
  (only when pending_intent_ttl_minutes is set)
- expire_subscriptions: ends lapsed trials and periods cancelled at their end
- retry_payouts: re-sends failed seller payouts once their back-off elapsed

Jobs are plain interval jobs held in memory; they are re-registered on
every startup, so no persistent job store is needed.
"""
import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor

from ..config import settings
from ..db.init_db import AsyncSessionLocal
from . import payment_service, payout_service, subscription_service, webhook_service

logger = logging.getLogger(__name__)


class JanitorScheduler:
    """
    Singleton scheduler for maintenance jobs.
    """

    _instance: Optional["JanitorScheduler"] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    def __new__(cls):
        """Singleton pattern to ensure only one scheduler instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._scheduler is None:
            self._initialize_scheduler()

    def _initialize_scheduler(self):
        """
        Configuration:
        - AsyncIOScheduler with AsyncIOExecutor
        - Coalesce: True (skip missed runs)
        - Max instances: 1 per job (a slow cleanup never overlaps itself)
        """
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }

        self._scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

        logger.info("APScheduler initialized for maintenance jobs")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self):
        """Register the janitor jobs and start. Called from the FastAPI lifespan."""
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.add_interval_job(
            "cleanup_webhook_events",
            run_webhook_cleanup,
            settings.janitor_interval_minutes,
        )
        if settings.pending_intent_ttl_minutes:
            self.add_interval_job(
                "expire_pending_intents",
                run_pending_expiry,
                settings.janitor_interval_minutes,
            )
        self.add_interval_job(
            "expire_subscriptions",
            run_subscription_expiry,
            settings.janitor_interval_minutes,
        )
        self.add_interval_job(
            "retry_payouts",
            run_payout_retry,
            settings.payout_retry_interval_minutes,
        )

        self._scheduler.start()
        logger.info(f"Scheduler started. Jobs: {[job.id for job in self._scheduler.get_jobs()]}")

    def shutdown(self, wait: bool = True):
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def add_interval_job(self, job_id: str, job_func, interval_minutes: float, **kwargs) -> str:
        """
        Add (or replace) a job running every interval_minutes.

        Returns:
            Job ID
        """
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=f"Janitor: {job_id}",
            replace_existing=True,
            kwargs=kwargs
        )
        logger.info(f"Added janitor job: {job_id}, interval={interval_minutes}min")
        return job_id

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)


# ============================================================================
# Jobs
# ============================================================================

async def run_webhook_cleanup() -> int:
    """Delete expired webhook events batch by batch until none are left."""
    total = 0
    async with AsyncSessionLocal() as db:
        while True:
            result = await webhook_service.cleanup_old_webhook_events(db)
            total += result.deleted
            if not result.has_more:
                break

    if total:
        logger.info(f"Janitor removed {total} webhook event(s)")
    return total


async def run_pending_expiry() -> int:
    if not settings.pending_intent_ttl_minutes:
        return 0
    async with AsyncSessionLocal() as db:
        return await payment_service.expire_pending_intents(db, settings.pending_intent_ttl_minutes)


async def run_subscription_expiry() -> int:
    async with AsyncSessionLocal() as db:
        result = await subscription_service.process_expired_subscriptions(db)
    return result["processed"]


async def run_payout_retry() -> int:
    """Re-send retryable payouts; returns how many went through."""
    async with AsyncSessionLocal() as db:
        result = await payout_service.retry_failed_payouts(db)
    return result["succeeded"]


# ============================================================================
# Global Scheduler Instance
# ============================================================================

scheduler = JanitorScheduler()


def start_scheduler():
    scheduler.start()


def shutdown_scheduler(wait: bool = True):
    scheduler.shutdown(wait=wait)
