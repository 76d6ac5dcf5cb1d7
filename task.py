import logging
import os

from celery import Celery
from prometheus_client import Histogram

from services.db import get_session
from services.session_sync import sync_broker_sessions

logger = logging.getLogger(__name__)


def get_redis_url() -> str:
    """Return the Redis URL for Celery.

    ``CELERY_BROKER_URL`` wins over ``REDIS_URL``.  If neither variable is
    defined a :class:`RuntimeError` is raised so the worker is explicitly
    configured.
    """

    url = os.environ.get("CELERY_BROKER_URL") or os.environ.get("REDIS_URL")
    if not url:
        raise RuntimeError("CELERY_BROKER_URL or REDIS_URL must be set")
    return url


_redis_url = get_redis_url()

celery = Celery(
    "worker",
    broker=_redis_url,
    backend=os.environ.get("CELERY_RESULT_BACKEND", _redis_url),
)
celery.conf.timezone = os.environ.get("CELERY_TIMEZONE", "UTC")
celery.conf.broker_connection_retry_on_startup = True
celery.conf.result_expires = 3600

celery.conf.beat_schedule = {
    "sync-broker-sessions": {
        "task": "services.tasks.sync_broker_sessions",
        "schedule": float(os.environ.get("SESSION_SYNC_INTERVAL", 60.0)),
    }
}

SYNC_LATENCY = Histogram(
    "sync_broker_sessions_duration_seconds",
    "Time taken by the broker session sync job",
)


@celery.task(name="services.tasks.sync_broker_sessions")
def sync_broker_sessions_task() -> int:
    """Clear stale session flags outside the Flask application context."""

    with SYNC_LATENCY.time():
        session = get_session()
        try:
            count = sync_broker_sessions(session)
        finally:
            session.close()
    logger.info("Broker session sync finished: %s rows", count)
    return count
