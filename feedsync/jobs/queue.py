# feedsync/jobs/queue.py
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import QUEUES
from ..utils.logger import debug, info
from .celery_app import TASK_NAMES, celery_app


def job_id(prefix: str, *parts) -> str:
    """``<prefix>-<ms>-<uuid8>[-parts]``: readable in listings and unique per enqueue."""
    base = f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    tail = "-".join(str(p) for p in parts if p is not None and p != "")
    return f"{base}-{tail}" if tail else base


@dataclass
class JobContext:
    """What a worker knows about the job it is running."""
    job_id: Optional[str] = None
    attempt: int = 1
    max_attempts: int = 1
    report: Optional[Callable[[dict], None]] = None

    @property
    def final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def progress(self, step: str, percentage: int, **extra):
        debug(f"[job {self.job_id}] {step} {percentage}%")
        if self.report is not None:
            self.report({"step": step, "percentage": percentage, **extra})


def job_from_meta(jid: str, meta: dict, queue: str | None = None) -> dict:
    """Flatten a celery result meta (stored with ``result_extended``) into a job dict."""
    status = meta.get("status") or "PENDING"
    failed = status == "FAILURE"
    args = meta.get("args") or [None]
    return {
        "id": jid,
        "queue": meta.get("queue") or queue,
        "name": meta.get("name"),
        "state": status,
        "data": args[0] if args else None,
        "result": None if failed else meta.get("result"),
        "error": str(meta.get("result")) if failed else None,
        "traceback": meta.get("traceback"),
        "retries": meta.get("retries") or 0,
        "finished_at": meta.get("date_done"),
    }


class JobQueue:
    """Enqueue and look up jobs on the Celery broker by queue name."""

    def __init__(self, app=None):
        self.app = app or celery_app

    def enqueue(self, queue: str, data: dict, opts: dict | None = None) -> str:
        if queue not in QUEUES:
            raise ValueError(f"unknown queue {queue!r}")
        opts = opts or {}
        jid = opts.get("job_id") or job_id(queue)
        self.app.send_task(
            TASK_NAMES[queue],
            args=[data],
            queue=queue,
            task_id=jid,
            countdown=opts.get("countdown"),
            priority=opts.get("priority"),
        )
        info(f"[queue] enqueued {jid} on {queue}")
        return jid

    def get_job(self, queue: str, jid: str) -> Optional[dict]:
        meta = self.app.backend.get_task_meta(jid)
        if not meta or (meta.get("status") == "PENDING" and not meta.get("name")):
            return None
        if meta.get("queue") and meta.get("queue") != queue:
            return None
        return job_from_meta(jid, meta, queue)
