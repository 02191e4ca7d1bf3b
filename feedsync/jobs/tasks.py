# feedsync/jobs/tasks.py
from celery import Task, shared_task

from ..config import (
    FAILED_RETENTION_SEC, GEMINI_SYNC_QUEUE, IMAGE_UPLOAD_QUEUE, MEILISEARCH_SYNC_QUEUE, PRODUCT_FAMILY_QUEUE,
    QUEUES, SUPPLIER_SYNC_QUEUE,
)
from ..container import get_container
from ..errors import ValidationError
from ..utils.logger import error, info, warn
from .celery_app import TASK_NAMES
from .queue import JobContext


def backoff(queue: str, retries: int, retry_after: float | None = None) -> int:
    """Seconds before the next attempt, honouring an upstream Retry-After when it is longer."""
    cfg = QUEUES[queue]
    delay = cfg["delay"] * (2 ** retries) if cfg["backoff"] == "exponential" else cfg["delay"]
    if retry_after:
        delay = max(delay, retry_after)
    return int(delay)


class FeedSyncTask(Task):
    queue_name: str = ""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        error(f"[queue] {self.queue_name} job {task_id} failed: {type(exc).__name__}: {exc}")
        try:
            get_container().queue_backend.retain(task_id, FAILED_RETENTION_SEC)
        except Exception as e:
            warn(f"[queue] could not extend retention of failed job {task_id}: {e}")

    def on_success(self, retval, task_id, args, kwargs):
        info(f"[queue] {self.queue_name} job {task_id} completed")


def run_job(task: Task, queue: str, data: dict, worker_of):
    """Run one job through its worker with queue-level retry and backoff.

    Validation errors fail the job on the spot; anything else is retried
    until the queue's attempts run out.
    """
    ctx = JobContext(
        job_id=task.request.id,
        attempt=task.request.retries + 1,
        max_attempts=QUEUES[queue]["attempts"],
        report=lambda meta: task.update_state(state="PROGRESS", meta=meta),
    )
    try:
        return worker_of(get_container()).process(data, ctx)
    except ValidationError:
        raise
    except Exception as e:
        if ctx.final_attempt:
            raise
        countdown = backoff(queue, task.request.retries, getattr(e, "retry_after", None))
        warn(f"[queue] {queue} job {task.request.id} attempt {ctx.attempt}/{ctx.max_attempts} failed, "
             f"retrying in {countdown}s: {e}")
        raise task.retry(exc=e, countdown=countdown)


def _options(queue: str) -> dict:
    return {
        "bind": True,
        "base": FeedSyncTask,
        "name": TASK_NAMES[queue],
        "queue_name": queue,
        "max_retries": QUEUES[queue]["attempts"] - 1,
    }


@shared_task(**_options(SUPPLIER_SYNC_QUEUE))
def supplier_sync(self, data: dict) -> dict:
    return run_job(self, SUPPLIER_SYNC_QUEUE, data, lambda c: c.supplier_worker)


@shared_task(**_options(PRODUCT_FAMILY_QUEUE))
def product_family(self, data: dict) -> dict:
    return run_job(self, PRODUCT_FAMILY_QUEUE, data, lambda c: c.family_worker)


@shared_task(**_options(IMAGE_UPLOAD_QUEUE))
def image_upload(self, data: dict) -> dict:
    return run_job(self, IMAGE_UPLOAD_QUEUE, data, lambda c: c.image_worker)


@shared_task(**_options(MEILISEARCH_SYNC_QUEUE))
def meilisearch_sync(self, data: dict) -> dict:
    return run_job(self, MEILISEARCH_SYNC_QUEUE, data, lambda c: c.search_worker)


@shared_task(**_options(GEMINI_SYNC_QUEUE))
def gemini_sync(self, data: dict) -> dict:
    return run_job(self, GEMINI_SYNC_QUEUE, data, lambda c: c.semantic_worker)
