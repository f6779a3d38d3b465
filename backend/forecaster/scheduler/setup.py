from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from pytz import timezone

from forecaster.scheduler.jobs import hourly_forecast, settlement_scan
from forecaster.config import get_settings
from forecaster.db.session import DATABASE_URL


settings = get_settings()

# Job state lives in the application database unless a dedicated store is configured.
scheduler = AsyncIOScheduler(
    jobstores={
        "default": SQLAlchemyJobStore(
            url=(settings.SCHEDULER_DB_URL or DATABASE_URL)
        )
    },
    timezone=timezone(settings.SCHEDULER_TZ),
)


def configure_jobs() -> None:
    """
    Register all recurring jobs with the scheduler.

    - hourly-forecast: one forecast per hour bucket, shortly after the hour
    - settlement-scan: settle expired windows, more often than the 1h horizon
    """
    scheduler.add_job(
        hourly_forecast,
        "cron",
        id="hourly-forecast",
        minute=settings.FORECAST_CRON_MINUTE,
        replace_existing=True,
        misfire_grace_time=900,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        settlement_scan,
        "interval",
        id="settlement-scan",
        minutes=settings.SETTLEMENT_INTERVAL_MINUTES,
        replace_existing=True,
        misfire_grace_time=300,
        coalesce=True,
        max_instances=1,
    )


async def init_scheduler() -> None:
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
