from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pytz import timezone

from market_oracle.config import get_settings
from market_oracle.db import session as db_session
from market_oracle.scheduler.jobs import run_market_price_sync

settings = get_settings()

MARKET_SYNC_JOB_ID = "market-price-sync"

# Global scheduler instance shared by the app lifecycle hooks.
scheduler = AsyncIOScheduler(
    jobstores={
        "default": SQLAlchemyJobStore(
            url=(settings.SCHEDULER_DB_URL or db_session.DATABASE_URL)
        )
    },
    timezone=timezone(settings.SCHEDULER_TZ),
)


def configure_jobs() -> None:
    """
    Register all recurring jobs with the scheduler.

    - market-price-sync: daily refresh of the market price cache
    """
    scheduler.add_job(
        run_market_price_sync,
        "cron",
        id=MARKET_SYNC_JOB_ID,
        hour=settings.MARKET_SYNC_HOUR,
        minute=settings.MARKET_SYNC_MINUTE,
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True,
        max_instances=1,
    )


async def init_scheduler(app) -> None:
    """
    FastAPI startup hook: initialize and start the APScheduler instance
    if SCHEDULER_ENABLED is true.
    """
    if not settings.SCHEDULER_ENABLED:
        return
    configure_jobs()
    scheduler.start()


async def shutdown_scheduler() -> None:
    """
    FastAPI shutdown hook: stop the scheduler cleanly.
    """
    if scheduler.running:
        scheduler.shutdown(wait=False)
