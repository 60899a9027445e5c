from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("pipeline_api", broker=settings.redis_url, backend=settings.redis_url, include=["app.crm.tasks"])
celery_app.conf.beat_schedule = {
    "crm-check-sla-breaches": {
        "task": "app.crm.tasks.check_sla_breaches",
        "schedule": settings.sla_check_interval_minutes * 60.0,
    },
}
celery_app.conf.timezone = "UTC"
