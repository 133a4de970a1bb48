"""
Conversion Scheduler - periodic jobs of the settlement engine

Jobs:
1. P2P Matching - match open Stars orders (every 5s)
2. Webhook Retry - redeliver due webhook events (every 60s)
3. Settlement Retry - re-spawn queued settlements and orphaned polls (every 2m)
4. Rate Lock Expiry - fail unused rate-locked shells, purge expired locks (every 60s)
5. Reconciliation Sweep - audit completed conversions and stale records (every 5m)

Every job tick is wrapped with supervised_job, so one failing or overrunning
job never stops the scheduler or its siblings.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from utils.exception_handler import supervised_job

logger = logging.getLogger(__name__)


class ConversionScheduler:
    """Owns the AsyncIOScheduler and the five engine jobs"""

    def __init__(
        self,
        conversion_service,
        p2p_service=None,
        webhook_service=None,
        reconciliation_service=None,
        rate_locks=None,
        tick_timeout_seconds: float = Config.JOB_TICK_TIMEOUT_SECONDS,
    ):
        self.conversion_service = conversion_service
        self.p2p_service = p2p_service
        self.webhook_service = webhook_service
        self.reconciliation_service = reconciliation_service
        self.rate_locks = rate_locks if rate_locks is not None else conversion_service.rate_locks
        self.tick_timeout_seconds = tick_timeout_seconds

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

        self.run_p2p_matching = supervised_job("p2p_matching", tick_timeout_seconds)(self._p2p_matching)
        self.run_webhook_retry = supervised_job("webhook_retry", tick_timeout_seconds)(self._webhook_retry)
        self.run_settlement_retry = supervised_job("settlement_retry", tick_timeout_seconds)(self._settlement_retry)
        self.run_rate_lock_expiry = supervised_job("rate_lock_expiry", tick_timeout_seconds)(self._rate_lock_expiry)
        self.run_reconciliation_sweep = supervised_job(
            "reconciliation_sweep", tick_timeout_seconds
        )(self._reconciliation_sweep)

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def _p2p_matching(self) -> int:
        return await self.p2p_service.run_matching_cycle()

    async def _webhook_retry(self) -> int:
        return await self.webhook_service.retry_failed_webhooks()

    async def _settlement_retry(self) -> int:
        return await self.conversion_service.retry_queued_settlements()

    async def _rate_lock_expiry(self) -> Dict[str, int]:
        shells = await self.conversion_service.expire_rate_locked_conversions()
        locks = self.rate_locks.clear_expired_locks()
        return {"expired_shells": shells, "cleared_locks": locks}

    async def _reconciliation_sweep(self):
        report = await self.reconciliation_service.run_reconciliation_sweep()
        if report.mismatched:
            logger.warning(f"⚠️ Reconciliation sweep found {report.mismatched} mismatches")
        return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _add(self, func, job_id: str, name: str, seconds: float) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ {name} scheduled every {seconds}s")

    def setup_jobs(self) -> None:
        """Register the engine jobs; collaborators that were not provided are skipped"""
        if self.p2p_service is not None:
            self._add(
                self.run_p2p_matching, "p2p_matching", "🔄 P2P Matching",
                Config.P2P_MATCHING_INTERVAL_SECONDS,
            )
        if self.webhook_service is not None:
            self._add(
                self.run_webhook_retry, "webhook_retry", "📨 Webhook Retry",
                Config.WEBHOOK_DISPATCH_INTERVAL_SECONDS,
            )
        self._add(
            self.run_settlement_retry, "settlement_retry", "🔁 Settlement Retry",
            Config.SETTLEMENT_RETRY_INTERVAL_SECONDS,
        )
        self._add(
            self.run_rate_lock_expiry, "rate_lock_expiry", "⏰ Rate Lock Expiry",
            Config.RATE_LOCK_EXPIRY_INTERVAL_SECONDS,
        )
        if self.reconciliation_service is not None:
            self._add(
                self.run_reconciliation_sweep, "reconciliation_sweep", "📊 Reconciliation Sweep",
                Config.RECONCILIATION_INTERVAL_SECONDS,
            )

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {"id": job.id, "name": job.name, "next_run_time": getattr(job, "next_run_time", None)}
            for job in self.scheduler.get_jobs()
        ]

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Conversion scheduler started with {len(self.scheduler.get_jobs())} jobs")

    async def stop(self, wait: bool = False, timeout_seconds: float = 5.0) -> bool:
        """Shut the scheduler down; newer APScheduler releases finish the shutdown on the event loop"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while self.scheduler.running and loop.time() < deadline:
            await asyncio.sleep(0.01)

        if self.scheduler.running:
            logger.warning("⚠️ Conversion scheduler still running after shutdown request")
            return False
        logger.info("📴 Conversion scheduler stopped")
        return True


_scheduler: Optional[ConversionScheduler] = None


def get_scheduler_instance(conversion_service=None, **services) -> ConversionScheduler:
    """Process-wide scheduler, created on first use"""
    global _scheduler
    if _scheduler is None:
        if conversion_service is None:
            raise RuntimeError("conversion_service is required to create the scheduler")
        _scheduler = ConversionScheduler(conversion_service, **services)
    return _scheduler
