import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import LockContentionError
from ingestion.factory import build_boundary_updater, build_reconciler
from ingestion.fetcher.http import build_client

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Out-of-band jobs: daily gap reconciliation and periodic boundary refresh"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def run_reconciler_job(self):
        """Job to reconcile the store against the snapshot"""
        logger.info("Scheduler: Starting gap reconciler")
        try:
            async with build_client() as client:
                reconciler = build_reconciler(client)
                result = await reconciler.run()
            logger.info(f"Scheduler: Gap reconciler wrote {result.total_writes} changes")
        except LockContentionError as e:
            logger.info(f"Scheduler: Gap reconciler already running elsewhere - {e}")
        except Exception as e:
            logger.error(f"Scheduler: Gap reconciler failed - {e}")

    async def run_boundary_job(self):
        """Job to refresh region boundaries"""
        logger.info("Scheduler: Starting boundary refresh")
        try:
            async with build_client() as client:
                updater = build_boundary_updater(client)
                results = await updater.refresh_all()
            for result in results:
                if result.failed_ids:
                    logger.warning(
                        f"Scheduler: {len(result.failed_ids)} {result.kind.value} boundaries not downloaded"
                    )
        except Exception as e:
            logger.error(f"Scheduler: Boundary refresh failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_reconciler_job,
            trigger=CronTrigger(hour=settings.RECONCILER_HOUR_UTC, minute=0, timezone="UTC"),
            id="gap_reconciler",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_boundary_job,
            trigger=IntervalTrigger(days=settings.BOUNDARY_REFRESH_DAYS),
            id="boundary_refresh",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Maintenance Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Maintenance Scheduler stopped")
