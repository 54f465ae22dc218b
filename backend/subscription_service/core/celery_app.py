"""Celery application configuration."""

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from subscription_service.core.config import settings
from subscription_service.core.logging import setup_logging

celery_app = Celery(
    "subscription_service",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["subscription_service.modules.sweeper"])


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Use the structured formatter in workers instead of Celery's default."""
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
