import base64
import json
from types import SimpleNamespace

import pytest

from feedsync.container import set_container
from feedsync.errors import TransientError, ValidationError
from feedsync.jobs.backend import CeleryQueueBackend, job_from_message
from feedsync.jobs.celery_app import TASK_NAMES, celery_app
from feedsync.jobs.queue import JobContext, job_from_meta, job_id
from feedsync.jobs.tasks import backoff, run_job


def test_job_ids_are_readable_and_unique():
    a, b = job_id("family", "A113", "F1"), job_id("family", "A113", "F1")
    assert a != b
    assert a.startswith("family-") and a.endswith("-A113-F1")
    assert job_id("supplier-sync").count("-") == 3


def test_job_context_progress_reports():
    seen = []
    ctx = JobContext(job_id="j1", attempt=2, max_attempts=3, report=seen.append)
    ctx.progress("fetching", 30, total=4)
    assert seen == [{"step": "fetching", "percentage": 30, "total": 4}]
    assert not ctx.final_attempt
    assert JobContext(attempt=3, max_attempts=3).final_attempt


def test_backoff_per_queue():
    assert backoff("product-family", 0) == 10
    assert backoff("product-family", 2) == 40
    assert backoff("image-upload", 3) == 30
    assert backoff("supplier-sync", 0, retry_after=120) == 120


def test_tasks_are_registered_per_queue():
    assert TASK_NAMES["meilisearch-sync"] == "feedsync.meilisearch_sync"
    task = celery_app.tasks[TASK_NAMES["image-upload"]]
    assert task.max_retries == 4
    assert task.queue_name == "image-upload"
    assert celery_app.conf.task_routes[TASK_NAMES["image-upload"]] == {"queue": "image-upload"}


# ===== run_job =====

class Retry(Exception):
    pass


class FakeTask:
    def __init__(self, retries=0):
        self.request = SimpleNamespace(id="job-1", retries=retries)
        self.states = []
        self.retried = None

    def update_state(self, state, meta):
        self.states.append((state, meta))

    def retry(self, exc, countdown):
        self.retried = (exc, countdown)
        return Retry()


class Worker:
    def __init__(self, error=None):
        self.error = error

    def process(self, data, ctx):
        ctx.progress("working", 50)
        if self.error:
            raise self.error
        return {"ok": True, "attempt": ctx.attempt}


@pytest.fixture()
def container():
    c = SimpleNamespace(worker=None)
    set_container(c)
    yield c
    set_container(None)


def test_run_job_reports_progress(container):
    container.worker = Worker()
    task = FakeTask()
    assert run_job(task, "product-family", {}, lambda c: c.worker) == {"ok": True, "attempt": 1}
    assert task.states == [("PROGRESS", {"step": "working", "percentage": 50})]


def test_run_job_retries_with_backoff(container):
    container.worker = Worker(TransientError("rate limited", retry_after=45))
    task = FakeTask(retries=1)
    with pytest.raises(Retry):
        run_job(task, "product-family", {}, lambda c: c.worker)
    assert task.retried[1] == 45


def test_run_job_does_not_retry_validation_or_final_attempt(container):
    container.worker = Worker(ValidationError("bad payload"))
    task = FakeTask()
    with pytest.raises(ValidationError):
        run_job(task, "product-family", {}, lambda c: c.worker)
    assert task.retried is None

    container.worker = Worker(RuntimeError("still down"))
    task = FakeTask(retries=2)
    with pytest.raises(RuntimeError):
        run_job(task, "product-family", {}, lambda c: c.worker)
    assert task.retried is None


# ===== backend =====

def _message(jid, data):
    body = base64.b64encode(json.dumps([[data], {}, {}]).encode()).decode()
    return json.dumps({"body": body, "properties": {"body_encoding": "base64"},
                       "headers": {"id": jid, "task": "feedsync.product_family", "retries": 1, "eta": None}})


class FakeRedis:
    def __init__(self):
        self.lists, self.values = {}, {}

    def lrange(self, key, start, end):
        return list(self.lists.get(key, []))

    def llen(self, key):
        return len(self.lists.get(key, []))

    def get(self, key):
        return self.values.get(key)

    def scan_iter(self, match=None, count=None):
        prefix = match.rstrip("*")
        return [k for k in self.values if k.startswith(prefix)]

    def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    def lrem(self, key, count, value):
        self.lists[key].remove(value)
        return 1


def test_job_from_message():
    job = job_from_message(_message("j1", {"aNumber": "F1"}), "product-family")
    assert job == {"id": "j1", "queue": "product-family", "name": "feedsync.product_family", "state": "waiting",
                   "data": {"aNumber": "F1"}, "retries": 1, "eta": None}
    assert job_from_message("not json", "product-family") is None


def test_job_from_meta_flattens_failures():
    job = job_from_meta("j1", {"status": "FAILURE", "result": {"exc_message": ["boom"]}, "args": [{"aNumber": "F1"}],
                               "name": "feedsync.product_family", "queue": "product-family"})
    assert job["state"] == "FAILURE"
    assert job["data"] == {"aNumber": "F1"}
    assert "boom" in job["error"]
    assert job["result"] is None


def test_backend_reads_broker_lists_and_result_meta():
    redis = FakeRedis()
    # LPUSH order: newest on the left
    redis.lists["product-family"] = [_message("j2", {"aNumber": "F2"}), _message("j1", {"aNumber": "F1"})]
    redis.values["celery-task-meta-done"] = json.dumps({"status": "SUCCESS", "queue": "product-family",
                                                        "args": [{}], "date_done": "2026-01-01T00:00:00"})
    redis.values["celery-task-meta-other"] = json.dumps({"status": "SUCCESS", "queue": "image-upload"})
    redis.values["celery-task-meta-running"] = json.dumps({"status": "STARTED", "queue": "product-family"})
    backend = CeleryQueueBackend(app=None, redis_client=redis)

    assert [j["id"] for j in backend.waiting("product-family")] == ["j1", "j2"]
    assert backend.waiting_count("product-family") == 2
    finished = backend.finished("product-family")
    assert [(j["id"], j["state"]) for j in finished] == [("done", "completed")]
    assert backend.meta("done")["state"] == "SUCCESS"
    assert backend.meta("missing") is None

    assert backend.remove_waiting("product-family", "j2")
    assert backend.waiting_count("product-family") == 1
    backend.forget("done")
    assert backend.finished("product-family") == []
