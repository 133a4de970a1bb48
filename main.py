#!/usr/bin/env python3
"""
Stars -> TON settlement engine startup

Startup sequence:
1. Logging and configuration checks
2. Database tables
3. Service graph (build_services)
4. Resume in-flight settlements left over from the previous process
5. Scheduler jobs until interrupted
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from config import Config
from database import SessionLocal, create_tables
from jobs.scheduler import ConversionScheduler
from services.confirmation_poller import ConfirmationPoller
from services.conversion_service import ConversionService
from services.fee_service import FeeService
from services.rate_aggregator_service import RateAggregatorService
from services.rate_lock_service import rate_lock_manager
from services.reconciliation_service import ReconciliationService
from services.stars_p2p_service import StarsP2PService
from services.ton_blockchain_service import TonBlockchainService
from services.webhook_service import WebhookService
from utils.background_task_runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Quiet chatty libraries
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


@dataclass
class EngineServices:
    conversions: ConversionService
    p2p: StarsP2PService
    webhooks: WebhookService
    reconciliation: ReconciliationService
    task_runner: BackgroundTaskRunner
    scheduler: ConversionScheduler


def build_services(session_factory: Optional[sessionmaker] = None) -> EngineServices:
    """Wire the service graph against one session factory and one task runner"""
    session_factory = session_factory or SessionLocal
    task_runner = BackgroundTaskRunner()
    blockchain = TonBlockchainService()
    poller = ConfirmationPoller(blockchain)

    webhooks = WebhookService(session_factory)
    p2p = StarsP2PService(session_factory, blockchain=blockchain, poller=poller, task_runner=task_runner)
    conversions = ConversionService(
        session_factory=session_factory,
        rate_source=RateAggregatorService(),
        fee_service=FeeService(session_factory),
        blockchain=blockchain,
        rate_locks=rate_lock_manager,
        p2p_service=p2p,
        webhook_service=webhooks,
        task_runner=task_runner,
        poller=poller,
    )
    reconciliation = ReconciliationService(session_factory, blockchain=blockchain)
    scheduler = ConversionScheduler(
        conversions,
        p2p_service=p2p,
        webhook_service=webhooks,
        reconciliation_service=reconciliation,
        rate_locks=rate_lock_manager,
    )
    return EngineServices(
        conversions=conversions,
        p2p=p2p,
        webhooks=webhooks,
        reconciliation=reconciliation,
        task_runner=task_runner,
        scheduler=scheduler,
    )


async def run_engine() -> None:
    Config.log_environment_config()
    issues = Config.validate()
    if issues and Config.IS_PRODUCTION:
        logger.error(f"❌ Refusing to start with {len(issues)} configuration problems")
        sys.exit(1)

    if not create_tables():
        logger.error("❌ Startup failed - database unavailable")
        sys.exit(1)

    services = build_services()
    # Rate locks are process local; shells from a previous process can only expire
    await services.conversions.expire_rate_locked_conversions()
    await services.conversions.retry_queued_settlements()
    services.scheduler.start()
    logger.info("🎉 Settlement engine started")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    try:
        await stop_event.wait()
    finally:
        await services.scheduler.stop()
        await services.p2p.stop_loop()
        await services.task_runner.cleanup()
        logger.info("📴 Settlement engine stopped")


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("👋 Engine stopped by user")
    except Exception as e:
        logger.error(f"❌ Fatal error: {e}")
        sys.exit(1)
