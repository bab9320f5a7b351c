from celery import Celery
from celery.schedules import crontab

from tenantlink.core.config import settings

# Broker/result backend both come from REDIS_URL
CELERY_BROKER_URL = settings.redis_url

celery_app = Celery(
    "tenantlink_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_BROKER_URL,
    include=["tenantlink.tasks.cleanup_tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
)

# Daily sweep. A missed run is harmless: terminal tokens are rejected at read time.
celery_app.conf.beat_schedule = {
    "invite-cleanup-daily": {
        "task": "tenantlink.tasks.cleanup_tasks.cleanup_invite_tokens",
        "schedule": crontab(hour=settings.cleanup_hour_utc, minute=0),
    },
}
