# feedsync/jobs/backend.py
import base64
import json
from typing import Optional

from ..utils.logger import debug, warn
from .queue import job_from_meta

INSPECT_TIMEOUT_SEC = 1.0
META_PREFIX = "celery-task-meta-"

# celery result statuses -> listing states
FINISHED_STATES = {"SUCCESS": "completed", "FAILURE": "failed"}


def _decode_body(message: dict):
    body = message.get("body")
    if (message.get("properties") or {}).get("body_encoding") == "base64":
        body = base64.b64decode(body).decode("utf-8")
    return json.loads(body) if isinstance(body, str) else body


def job_from_message(raw: str, queue: str) -> Optional[dict]:
    """A waiting job from a raw broker message (celery protocol 2 over the redis transport)."""
    try:
        message = json.loads(raw)
        headers = message.get("headers") or {}
        args = (_decode_body(message) or [[]])[0]
    except (ValueError, TypeError, KeyError, IndexError) as e:
        warn(f"[queue] unreadable message on {queue}: {e}")
        return None
    return {
        "id": headers.get("id"),
        "queue": queue,
        "name": headers.get("task"),
        "state": "waiting",
        "data": args[0] if args else None,
        "retries": headers.get("retries") or 0,
        "eta": headers.get("eta"),
    }


def _job_from_request(request: dict, queue: str, state: str) -> dict:
    args = request.get("args") or []
    return {
        "id": request.get("id"),
        "queue": queue,
        "name": request.get("name") or request.get("type"),
        "state": state,
        "data": args[0] if args else None,
        "worker": request.get("hostname"),
        "started_at": request.get("time_start"),
    }


class CeleryQueueBackend:
    """Queue introspection and control for celery with a redis broker and result backend.

    Waiting jobs are read from the broker lists, running and scheduled jobs
    from the workers (``control.inspect``), finished jobs from the result
    metadata stored with ``result_extended``.
    """

    def __init__(self, app, redis_client):
        self.app = app
        self.redis = redis_client

    def _inspect(self):
        return self.app.control.inspect(timeout=INSPECT_TIMEOUT_SEC)

    # ===== reads =====

    def waiting(self, queue: str) -> list[dict]:
        # producers LPUSH and workers BRPOP, so the oldest message sits at the right end
        raws = self.redis.lrange(queue, 0, -1)
        jobs = [job_from_message(r, queue) for r in reversed(raws)]
        return [j for j in jobs if j and j["id"]]

    def waiting_count(self, queue: str) -> int:
        return int(self.redis.llen(queue))

    def active(self, queue: str) -> list[dict]:
        out = []
        for requests_ in (self._inspect().active() or {}).values():
            for req in requests_:
                if (req.get("delivery_info") or {}).get("routing_key") == queue:
                    out.append(_job_from_request(req, queue, "active"))
        return out

    def scheduled(self, queue: str) -> list[dict]:
        out = []
        for entries in (self._inspect().scheduled() or {}).values():
            for entry in entries:
                req = entry.get("request") or {}
                if (req.get("delivery_info") or {}).get("routing_key") == queue:
                    job = _job_from_request(req, queue, "delayed")
                    job["eta"] = entry.get("eta")
                    out.append(job)
        return out

    def meta(self, jid: str) -> Optional[dict]:
        raw = self.redis.get(f"{META_PREFIX}{jid}")
        if not raw:
            return None
        return job_from_meta(jid, json.loads(raw))

    def finished(self, queue: str, limit: int | None = None) -> list[dict]:
        """Completed and failed jobs of one queue, newest first."""
        jobs = []
        for key in self.redis.scan_iter(match=f"{META_PREFIX}*", count=500):
            raw = self.redis.get(key)
            if not raw:
                continue
            meta = json.loads(raw)
            if meta.get("queue") != queue or meta.get("status") not in FINISHED_STATES:
                continue
            job = job_from_meta(key[len(META_PREFIX):], meta, queue)
            job["state"] = FINISHED_STATES[meta["status"]]
            jobs.append(job)
        jobs.sort(key=lambda j: j.get("finished_at") or "", reverse=True)
        return jobs[:limit] if limit is not None else jobs

    def workers(self) -> dict[str, list[str]]:
        queues = self._inspect().active_queues() or {}
        return {worker: [q.get("name") for q in qs] for worker, qs in queues.items()}

    # ===== writes =====

    def send(self, queue: str, task_name: str, data, jid: str):
        self.app.send_task(task_name, args=[data], queue=queue, task_id=jid)

    def remove_waiting(self, queue: str, jid: str) -> bool:
        for raw in self.redis.lrange(queue, 0, -1):
            job = job_from_message(raw, queue)
            if job and job["id"] == jid:
                return self.redis.lrem(queue, 1, raw) > 0
        return False

    def revoke(self, jid: str):
        self.app.control.revoke(jid)

    def forget(self, jid: str):
        self.redis.delete(f"{META_PREFIX}{jid}")

    def retain(self, jid: str, seconds: int):
        self.redis.expire(f"{META_PREFIX}{jid}", seconds)

    def purge(self, queue: str) -> int:
        with self.app.connection_for_write() as conn:
            return int(conn.default_channel.queue_purge(queue) or 0)

    def pause(self, queue: str):
        self.app.control.cancel_consumer(queue)

    def resume(self, queue: str):
        self.app.control.add_consumer(queue)
        debug(f"[queue] consumers re-added for {queue}")
