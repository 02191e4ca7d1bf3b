# feedsync/services/queue_manager.py
import math
import time
from datetime import datetime, timezone

from ..config import QUEUE_STATS_CACHE_SEC, QUEUES
from ..errors import NotFoundError, ValidationError
from ..jobs.celery_app import TASK_NAMES
from ..utils.logger import info, warn
from ..utils.ttl_cache import TTLCache

STATES = ("waiting", "active", "delayed", "completed", "failed")
SEARCH_WINDOW = 1000
SEARCH_DATA_FIELDS = ("supplierCode", "aNumber", "sku", "documentId")
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


def paused_key(queue: str) -> str:
    return f"queue:paused:{queue}"


def _finished_ms(job: dict):
    value = job.get("finished_at")
    if not value:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        dt = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def matches(job: dict, term: str) -> bool:
    """Case-insensitive match on id, task name and the identifying payload fields."""
    term = term.lower()
    if term in str(job.get("id") or "").lower() or term in str(job.get("name") or "").lower():
        return True
    data = job.get("data") if isinstance(job.get("data"), dict) else {}
    return any(term in str(data.get(f) or "").lower() for f in SEARCH_DATA_FIELDS)


def list_entry(job: dict) -> dict:
    data = job.get("data") if isinstance(job.get("data"), dict) else {}
    return {
        "id": job.get("id"),
        "name": job.get("name"),
        "state": job.get("state"),
        "supplierCode": data.get("supplierCode"),
        "aNumber": data.get("aNumber"),
        "sessionId": data.get("sessionId"),
        "retries": job.get("retries") or 0,
        "error": job.get("error"),
        "finishedAt": job.get("finished_at"),
    }


class QueueManager:
    """Operator view over the five work queues: counts, listings, retry, delete, pause, clean.

    ``backend`` does the broker-specific work (see ``jobs.backend``); paused
    flags live in the key-value store so they survive worker restarts.
    """

    def __init__(self, backend, kv, stats_ttl: float = QUEUE_STATS_CACHE_SEC, clock=time.monotonic):
        self.backend = backend
        self.kv = kv
        self._stats_cache = TTLCache(stats_ttl, clock=clock)

    def _check_queue(self, queue: str):
        if queue not in QUEUES:
            raise NotFoundError(f"unknown queue {queue}")

    # ===== stats =====

    def is_paused(self, queue: str) -> bool:
        return self.kv.exists(paused_key(queue))

    def _queue_stats(self, queue: str) -> dict:
        waiting = self.backend.waiting_count(queue)
        active = len(self.backend.active(queue))
        delayed = len(self.backend.scheduled(queue))
        finished = self.backend.finished(queue)
        completed = sum(1 for j in finished if j["state"] == "completed")
        failed = sum(1 for j in finished if j["state"] == "failed")
        return {
            "queueName": queue,
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "paused": self.is_paused(queue),
            "total": waiting + active + completed + failed + delayed,
        }

    def stats(self, queue: str | None = None):
        """One queue's counts, or a list for every queue. Cached for a couple of seconds."""
        if queue is not None:
            self._check_queue(queue)
            return self._stats_cache.get_or_compute(queue, lambda: self._queue_stats(queue))
        return self._stats_cache.get_or_compute("all", lambda: [self._queue_stats(q) for q in QUEUES])

    def worker_status(self) -> list[dict]:
        try:
            workers = self.backend.workers()
        except Exception as e:
            warn(f"[queue] worker inspection failed: {e}")
            workers = {}
        out = []
        for queue, cfg in QUEUES.items():
            consuming = sorted(w for w, qs in workers.items() if queue in qs)
            out.append({
                "queueName": queue,
                "concurrency": cfg["concurrency"],
                "workers": consuming,
                "running": bool(consuming),
                "paused": self.is_paused(queue),
            })
        return out

    # ===== listing =====

    def _jobs(self, queue: str, state: str) -> list[dict]:
        if state == "waiting":
            return self.backend.waiting(queue)
        if state == "active":
            return self.backend.active(queue)
        if state == "delayed":
            return self.backend.scheduled(queue)
        return [j for j in self.backend.finished(queue) if j["state"] == state]

    def list_jobs(self, queue: str, state: str = "waiting", page: int = 1,
                  page_size: int = DEFAULT_PAGE_SIZE, search: str | None = None) -> dict:
        self._check_queue(queue)
        if state not in STATES:
            raise ValueError(f"invalid state {state!r}, expected one of {', '.join(STATES)}")
        page = max(1, int(page))
        page_size = min(max(1, int(page_size)), MAX_PAGE_SIZE)

        jobs = self._jobs(queue, state)
        if search:
            jobs = [j for j in jobs[:SEARCH_WINDOW] if matches(j, search)]
        total = len(jobs)
        start = (page - 1) * page_size
        return {
            "jobs": [list_entry(j) for j in jobs[start:start + page_size]],
            "total": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size) if total else 0,
        }

    def get_job(self, queue: str, jid: str) -> dict:
        self._check_queue(queue)
        job = self.backend.meta(jid)
        if job is not None and job.get("queue") in (None, queue) and job["state"] in ("SUCCESS", "FAILURE"):
            job["state"] = "completed" if job["state"] == "SUCCESS" else "failed"
            return job
        for state in ("waiting", "active", "delayed"):
            for candidate in self._jobs(queue, state):
                if candidate["id"] == jid:
                    return candidate
        raise NotFoundError(f"job {jid} not found on {queue}")

    # ===== control =====

    def retry_job(self, queue: str, jid: str) -> dict:
        job = self.get_job(queue, jid)
        if job["state"] != "failed":
            raise ValidationError(f"job {jid} is {job['state']}, only failed jobs can be retried")
        self.backend.forget(jid)
        self.backend.send(queue, job.get("name") or TASK_NAMES[queue], job.get("data"), jid)
        self._stats_cache.invalidate()
        info(f"[queue] retried {jid} on {queue}")
        return {"id": jid, "retried": True}

    def retry_failed_jobs(self, queue: str, limit: int = 100) -> dict:
        self._check_queue(queue)
        failed = self._jobs(queue, "failed")[:limit]
        retried, errors = 0, 0
        for job in failed:
            try:
                self.backend.forget(job["id"])
                self.backend.send(queue, job.get("name") or TASK_NAMES[queue], job.get("data"), job["id"])
                retried += 1
            except Exception as e:
                warn(f"[queue] retry of {job['id']} failed: {e}")
                errors += 1
        self._stats_cache.invalidate()
        info(f"[queue] {queue}: retried {retried}/{len(failed)} failed jobs")
        return {"retriedCount": retried, "failedCount": errors, "total": len(failed)}

    def delete_job(self, queue: str, jid: str) -> dict:
        job = self.get_job(queue, jid)
        if job["state"] == "waiting":
            self.backend.remove_waiting(queue, jid)
        elif job["state"] in ("active", "delayed"):
            self.backend.revoke(jid)
        self.backend.forget(jid)
        self._stats_cache.invalidate()
        info(f"[queue] deleted {jid} ({job['state']}) from {queue}")
        return {"id": jid, "deleted": True}

    def pause_queue(self, queue: str) -> dict:
        self._check_queue(queue)
        self.backend.pause(queue)
        self.kv.set(paused_key(queue), "1")
        self._stats_cache.invalidate()
        info(f"[queue] {queue} paused")
        return {"queueName": queue, "paused": True}

    def resume_queue(self, queue: str) -> dict:
        self._check_queue(queue)
        self.backend.resume(queue)
        self.kv.delete(paused_key(queue))
        self._stats_cache.invalidate()
        info(f"[queue] {queue} resumed")
        return {"queueName": queue, "paused": False}

    def clean_queue(self, queue: str, grace_ms: int = 3600000, status: str = "completed", limit: int = 1000,
              now_ms: int | None = None) -> dict:
        """Drop finished jobs older than ``grace_ms``."""
        self._check_queue(queue)
        if status not in ("completed", "failed"):
            raise ValueError(f"can only clean completed or failed jobs, not {status!r}")
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        deleted = 0
        for job in self._jobs(queue, status):
            if deleted >= limit:
                break
            finished = _finished_ms(job)
            if finished is not None and now_ms - finished >= grace_ms:
                self.backend.forget(job["id"])
                deleted += 1
        self._stats_cache.invalidate()
        info(f"[queue] {queue}: cleaned {deleted} {status} jobs")
        return {"queueName": queue, "deletedCount": deleted}

    def drain_queue(self, queue: str) -> dict:
        self._check_queue(queue)
        removed = self.backend.purge(queue)
        self._stats_cache.invalidate()
        warn(f"[queue] {queue} drained, {removed} waiting jobs removed")
        return {"queueName": queue, "removedCount": removed}
