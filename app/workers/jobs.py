"""
Background job definitions.

The expiry sweep only persists what reads already derive from the clock;
correctness never depends on it running.
"""
from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler
from datetime import datetime, timezone

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

EXPIRY_SWEEP_JOB_ID = "quotedesk-expiry-sweep"


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(queue=Queue("low", connection=redis_conn), connection=redis_conn)


# ============= JOB FUNCTIONS =============

def sweep_expired_quotes_job() -> int:
    """Background job to persist ``expired`` on overdue quote requests."""
    from app.db.session import get_db_context
    from app.services.negotiation import sweep_expired

    logger.info("Running quote expiry sweep")
    with get_db_context() as db:
        count = sweep_expired(db)
    logger.info(f"Quote expiry sweep done: {count} request(s) expired")
    return count


# ============= QUEUE HELPERS =============

def enqueue_expiry_sweep():
    """Queue a one-off expiry sweep."""
    queue = get_queue("low")
    return queue.enqueue(sweep_expired_quotes_job)


def schedule_expiry_sweep(interval: int = None):
    """
    Register the periodic expiry sweep with rq-scheduler.

    Any previous registration is cancelled first so restarts do not stack jobs.
    """
    scheduler = get_scheduler()
    for job in scheduler.get_jobs():
        if job.id == EXPIRY_SWEEP_JOB_ID:
            scheduler.cancel(job)

    interval = interval or settings.EXPIRY_SWEEP_INTERVAL_SECONDS
    logger.info(f"Scheduling quote expiry sweep every {interval}s")
    return scheduler.schedule(
        scheduled_time=datetime.now(timezone.utc),
        func=sweep_expired_quotes_job,
        interval=interval,
        repeat=None,
        id=EXPIRY_SWEEP_JOB_ID,
    )


if __name__ == "__main__":
    schedule_expiry_sweep()
