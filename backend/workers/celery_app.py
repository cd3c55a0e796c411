from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from calendar_connector.core.config import settings

celery_app = Celery(
    "calendar_connector",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="integrations",
    task_queues=(
        Queue("integrations"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.check_connected_integrations": {"queue": "scheduler"},
        "workers.tasks.check_integration": {"queue": "integrations"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "integration-health-check": {
            "task": "workers.tasks.check_connected_integrations",
            "schedule": schedule(settings.integration_health_check_interval_seconds),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
