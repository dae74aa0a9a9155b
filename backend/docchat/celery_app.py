# backend/docchat/celery_app.py
"""Celery application for scheduled chat maintenance.

Loads broker/backend from settings. The chat worker itself is a long-running
asyncio process (backend/main.py); Celery only runs the periodic sweep.
Run locally:
  celery -A docchat.celery_app.celery_app worker --beat --loglevel=info --pool=solo
"""
from celery import Celery

from docchat.config import settings
from docchat.utils.logging import logger

celery_app = Celery(
    "docchat_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    worker_max_tasks_per_child=100,  # recycle to avoid memory leaks
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "sweep-chat-messages": {
            "task": "docchat.celery_app.sweep_chat_messages",
            "schedule": float(settings.sweep_interval_seconds),
        },
    },
)


@celery_app.task(name="docchat.celery_app.sweep_chat_messages")
def sweep_chat_messages():
    """Requeue stale claims and retryable failures."""
    from docchat.services.sweeper import sweep_messages

    result = sweep_messages()
    logger.info("Chat message sweep finished", extra=result.to_dict())
    return result.to_dict()
