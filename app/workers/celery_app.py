# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the work that does not belong to a single workflow run:
#   - cleanup_old_workflows      (beat, daily): retention sweep
#   - index_knowledge_document   (on demand):   parse → chunk → embed → store
#                                               standing company knowledge
#
# Workflow pipelines themselves run as asyncio tasks in the API process so
# progress events can reach SSE subscribers directly.
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ beat /   │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │ producer │     │(broker)│    │ (consumer)   │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#                    db 0                                db 1
# =============================================================================

from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only; pickle can execute code on deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's task is re-queued.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Knowledge documents can be large PDFs (Docling + embeddings).
    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,
    timezone="UTC",
    include=["app.workers.tasks"],

    # --- Beat ---
    beat_schedule={
        "cleanup-old-workflows": {
            "task": "cleanup_old_workflows",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
