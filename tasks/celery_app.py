"""
tasks/celery_app.py
Celery application instance shared by the task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "rainbow_tour_guides",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.slot_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_routes={
        "tasks.slot_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Cancel reservations nobody answered within the hold window and reopen their slots
    "release-expired-slot-holds": {
        "task": "tasks.slot_tasks.release_expired_slot_holds",
        "schedule": 300,  # every 5 minutes
    },
}
