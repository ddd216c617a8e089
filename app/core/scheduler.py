import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.memory import MemoryJobStore

from app.core.config import settings

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "token_cleanup"

scheduler = BackgroundScheduler(
    jobstores={"default": MemoryJobStore()},
    job_defaults={"coalesce": True, "max_instances": 1},
)


def run_token_cleanup(codec) -> None:
    """Sweep expired refresh tokens and ledger entries on the scheduler thread."""
    from app.core.database import SessionLocal
    from app.services.refresh_token_store import RefreshTokenStore
    from app.services.revocation_ledger import RevocationLedger
    from app.services.token_service import TokenLifecycleService

    db = SessionLocal()
    try:
        service = TokenLifecycleService(
            codec=codec,
            store=RefreshTokenStore(db),
            ledger=RevocationLedger(db, access_token_ttl=codec.access_token_ttl),
        )
        service.run_cleanup()
    except Exception as e:
        db.rollback()
        logger.error(f"Token cleanup failed: {e}", exc_info=True)
    finally:
        db.close()


def start_scheduler(codec) -> None:
    """Register the periodic cleanup job and start the scheduler."""
    scheduler.add_job(
        run_token_cleanup,
        trigger="interval",
        minutes=settings.CLEANUP_INTERVAL_MINUTES,
        id=CLEANUP_JOB_ID,
        args=[codec],
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"APScheduler started; token cleanup every {settings.CLEANUP_INTERVAL_MINUTES} minutes")


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler shut down")
