"""Celery application and beat schedule for the DropDeck workers.

Run a worker and the beat scheduler with:
    celery -A workers.celery_app worker --loglevel=INFO
    celery -A workers.celery_app beat --loglevel=INFO

All periodic work is UTC. A worker refuses to start without a usable
content encryption key.
"""

import logging

from celery import Celery
from celery.exceptions import WorkerShutdown
from celery.schedules import crontab
from celery.signals import worker_init

from config import settings
from domain.lifecycle.errors import ConfigError
from infrastructure.encryption.content_cipher import build_cipher
from observability.logging_config import configure_logging

configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

logger = logging.getLogger(__name__)

celery_app = Celery(
    "dropdeck",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["lifecycle.tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # A sweep must not be redelivered while a slow one is still running
    task_acks_late=False,
    worker_prefetch_multiplier=1,
    result_expires=3600,
)

celery_app.conf.beat_schedule = {
    "lifecycle-sweep-interval": {
        "task": "lifecycle.sweep_once",
        "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
        "options": {
            "expires": settings.SWEEP_INTERVAL_SECONDS,  # Drop ticks nobody picked up
        },
    },
    "lifecycle-sweep-safety-net": {
        "task": "lifecycle.sweep_safety_net",
        "schedule": crontab(hour=settings.SAFETY_NET_HOUR_UTC, minute=0),
        "options": {
            "expires": 3600,
        },
    },
    "lifecycle-purge-old-exports": {
        "task": "lifecycle.purge_old_exports",
        "schedule": crontab(hour=(settings.SAFETY_NET_HOUR_UTC + 1) % 24, minute=30),
        "options": {
            "expires": 3600,
        },
    },
}


@worker_init.connect
def validate_lifecycle_config(sender=None, **kwargs):
    """Abort worker startup when the content cipher cannot be built.

    Celery logs and swallows ordinary exceptions raised by signal
    receivers, so the failure is raised as WorkerShutdown.
    """
    try:
        build_cipher(settings.CONTENT_ENCRYPTION_KEY, settings.CONTENT_ENCRYPTION_ALGORITHM)
    except ConfigError as e:
        logger.critical(f"Worker startup aborted: {e}")
        raise WorkerShutdown(str(e)) from e
