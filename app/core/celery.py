"""
Celery: barrido periódico de integridad de mesas
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "billar360",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.tables.tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # El barrido es corto; si excede el límite el siguiente ciclo lo retoma
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    broker_connection_retry_on_startup=True,
    result_expires=3600,

    task_routes={
        "app.modules.tables.tasks.*": {"queue": "tables"},
    },

    beat_schedule={
        "sweep-stale-table-sessions": {
            "task": "app.modules.tables.tasks.sweep_stale_sessions",
            "schedule": settings.AUDIT_SWEEP_INTERVAL_SECONDS,
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
