from celery import Celery
from celery.signals import task_failure, task_retry
from otp_delivery.core.config import settings
import logging

logger = logging.getLogger(__name__)

# Initialize Celery
celery_app = Celery(
    "otp_delivery_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['otp_delivery.tasks.delivery_tasks']
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "send_code_task": {"queue": "deliveries"},
    },
    task_default_queue="deliveries",
    task_acks_late=True,  # Only acknowledge tasks after they succeed or fail
    task_reject_on_worker_lost=True,
    worker_concurrency=settings.CELERY_WORKER_CONCURRENCY,
    result_expires=3600,
    task_track_started=True,
    worker_hijack_root_logger=False,
    # Codes expire quickly, a send that is late is useless
    task_time_limit=5 * 60,
    task_soft_time_limit=2 * 60,
)


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, **kwargs):
    """Log task failures"""
    logger.error(f"Task {getattr(sender, 'name', sender)} [{task_id}] failed: {exception}")


@task_retry.connect
def task_retry_handler(sender=None, request=None, reason=None, **kwargs):
    """Log task retries"""
    logger.warning(f"Task {getattr(sender, 'name', sender)} retrying: {reason}")
