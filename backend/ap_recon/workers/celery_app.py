from celery import Celery
from celery.schedules import crontab

from ap_recon.core.config import settings

celery_app = Celery(
    "ap_recon_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "ap_recon.workers.detection_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "scan-invoice-exceptions": {
        "task": "ap_recon.workers.detection_tasks.scan_exceptions",
        "schedule": crontab(hour=settings.EXCEPTION_SCAN_CRON_HOUR, minute=0),
    },
    "scan-invoice-staleness-daily": {
        "task": "ap_recon.workers.detection_tasks.scan_staleness",
        "schedule": crontab(hour=settings.STALENESS_SCAN_CRON_HOUR, minute=0),
    },
}
