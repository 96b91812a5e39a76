from celery import Celery

from leadflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["leadflow.workflows.tasks"],
)
celery_app.conf.beat_schedule = {
    "workflow-process-pending": {
        "task": "leadflow.workflows.process_pending",
        "schedule": float(settings.workflow_poll_interval_seconds),
    },
}
