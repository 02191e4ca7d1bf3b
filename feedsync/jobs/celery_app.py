# feedsync/jobs/celery_app.py
from celery import Celery
from kombu import Queue

from ..config import (
    CELERY_BROKER_URL, CELERY_RESULT_BACKEND, COMPLETED_RETENTION_SEC, QUEUES, SUPPLIER_SYNC_QUEUE,
)

# one task per queue; payloads are plain JSON dicts
TASK_NAMES = {name: f"feedsync.{name.replace('-', '_')}" for name in QUEUES}

celery_app = Celery(
    "feedsync",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["feedsync.jobs.tasks"],
)

celery_app.conf.update(
    task_queues=[Queue(name) for name in QUEUES],
    task_default_queue=SUPPLIER_SYNC_QUEUE,
    task_routes={TASK_NAMES[name]: {"queue": name} for name in QUEUES},
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # keep task name, args and queue in the result meta so jobs can be listed and re-sent
    result_extended=True,
    task_track_started=True,
    result_expires=COMPLETED_RETENTION_SEC,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_annotations={
        TASK_NAMES[name]: {"time_limit": cfg["timeout"], "soft_time_limit": max(cfg["timeout"] - 10, 1)}
        for name, cfg in QUEUES.items()
    },
)
