import fnmatch
import itertools
import json
import os
import sys
import threading
import time
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_LEVEL", "WARN")
os.environ.setdefault("GEMINI_AUTO_SYNC", "false")

from feedsync.db import create_all, make_engine, make_session_factory  # noqa: E402
from feedsync.models import Supplier  # noqa: E402
from feedsync.store import CatalogStore  # noqa: E402


# =========================================================
# Fakes
# =========================================================

class FakeKeyValueStore:
    """TTL dict; set-if-absent and compare-and-delete are atomic like their redis counterparts."""

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self.data: dict[str, tuple[str, float | None]] = {}
        self._mutex = threading.Lock()

    def _live(self, key):
        hit = self.data.get(key)
        if hit is None:
            return None
        value, expires = hit
        if expires is not None and expires <= self.clock():
            del self.data[key]
            return None
        return value

    def set_if_absent(self, key, value, ttl_sec):
        with self._mutex:
            if self._live(key) is not None:
                return False
            self.data[key] = (value, self.clock() + ttl_sec)
            return True

    def set(self, key, value, ttl_sec=None):
        self.data[key] = (value, self.clock() + ttl_sec if ttl_sec else None)

    def get(self, key):
        return self._live(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self.data.pop(key, None)
        return removed

    def delete_if_field(self, key, field, expected, *also):
        with self._mutex:
            raw = self._live(key)
            if raw is not None:
                try:
                    held = json.loads(raw)
                except ValueError:
                    return -1
                if not isinstance(held, dict) or held.get(field) != expected:
                    return -1
            return self.delete(key, *also)

    def exists(self, key):
        return self._live(key) is not None

    def ttl(self, key):
        if self._live(key) is None:
            return -2
        expires = self.data[key][1]
        return -1 if expires is None else int(expires - self.clock())

    def scan(self, pattern):
        return [k for k in list(self.data) if fnmatch.fnmatchcase(k, pattern) and self._live(k) is not None]

    def ping(self):
        return True


class FakeJobQueue:
    """Records every enqueue; ``run_all`` hands queued jobs to workers in FIFO order."""

    def __init__(self):
        self.jobs: list[dict] = []
        self._seq = itertools.count(1)

    def enqueue(self, queue, data, opts=None):
        opts = opts or {}
        jid = opts.get("job_id") or f"{queue}-{next(self._seq)}"
        self.jobs.append({"id": jid, "queue": queue, "data": data, "opts": opts})
        return jid

    def on(self, queue):
        return [j for j in self.jobs if j["queue"] == queue]

    def run_all(self, workers: dict, queues=None):
        results = []
        while True:
            pending = [j for j in self.jobs if not j.get("done") and (queues is None or j["queue"] in queues)]
            if not pending:
                return results
            job = pending[0]
            job["done"] = True
            results.append(workers[job["queue"]].process(job["data"]))


class FakeFeed:
    def __init__(self, manifest: str = "", documents: dict | None = None, images: dict | None = None):
        self.manifest = manifest
        self.documents = documents or {}
        self.images = images or {}
        self.json_calls: list[str] = []
        self.bytes_calls: list[str] = []

    def import_url(self):
        return "https://feed.test/Import/Import.txt"

    def fetch_text(self, url):
        return self.manifest

    def fetch_json(self, url):
        self.json_calls.append(url)
        if url not in self.documents:
            raise RuntimeError(f"client error 404 on {url}")
        return self.documents[url]

    def fetch_bytes(self, url):
        self.bytes_calls.append(url)
        return self.images.get(url, b"\xff\xd8\xff\xe0fakejpeg")


class FakeObjectStorage:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str | None]] = {}

    def put(self, key, data, content_type, bucket=None):
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"

    def delete(self, key, bucket=None):
        self.objects.pop(key, None)


class FakeSearchIndex:
    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.failed_tasks: set[int] = set()
        self.waited: list[int] = []

    def upsert_document(self, doc_id, document):
        self.documents[doc_id] = dict(document, id=doc_id)
        return {"taskUid": len(self.documents)}

    def delete_document(self, doc_id):
        self.documents.pop(doc_id, None)
        return {"taskUid": 0}

    def get_document(self, doc_id):
        return self.documents.get(doc_id)

    def get_stats(self):
        return {"documentCount": len(self.documents), "isIndexing": False}

    def wait_for_task(self, task_uid):
        self.waited.append(task_uid)
        if task_uid in self.failed_tasks:
            return {"taskUid": task_uid, "status": "failed", "error": {"code": "invalid_document_id"}}
        return {"taskUid": task_uid, "status": "succeeded"}

    def healthy(self):
        return True


class FakeFileSearchClient:
    configured = True

    def __init__(self):
        self.files: dict[str, dict] = {}

    def upload_and_wait(self, display_name, payload):
        name = f"fileSearchStores/test/documents/{len(self.files) + 1}"
        self.files[name] = payload
        return name

    def delete_document(self, document_name):
        return self.files.pop(document_name, None) is not None

    def get_store(self):
        return {"activeDocumentsCount": len(self.files)}


class FakeQueueBackend:
    def __init__(self):
        self.waiting_jobs: dict[str, list[dict]] = {}
        self.active_jobs: dict[str, list[dict]] = {}
        self.scheduled_jobs: dict[str, list[dict]] = {}
        self.finished_jobs: dict[str, list[dict]] = {}
        self.sent: list[tuple] = []
        self.forgotten: list[str] = []
        self.revoked: list[str] = []
        self.paused: set[str] = set()
        self.calls = 0

    def add_finished(self, queue, jid, state, data=None, finished_at=None, error=None):
        self.finished_jobs.setdefault(queue, []).append({
            "id": jid, "queue": queue, "name": f"feedsync.{queue.replace('-', '_')}", "state": state,
            "data": data, "result": None, "error": error, "traceback": None, "retries": 0,
            "finished_at": finished_at,
        })

    def add_waiting(self, queue, jid, data=None):
        self.waiting_jobs.setdefault(queue, []).append({
            "id": jid, "queue": queue, "name": f"feedsync.{queue.replace('-', '_')}", "state": "waiting",
            "data": data, "retries": 0, "eta": None,
        })

    def waiting(self, queue):
        return list(self.waiting_jobs.get(queue, []))

    def waiting_count(self, queue):
        self.calls += 1
        return len(self.waiting_jobs.get(queue, []))

    def active(self, queue):
        return list(self.active_jobs.get(queue, []))

    def scheduled(self, queue):
        return list(self.scheduled_jobs.get(queue, []))

    def finished(self, queue, limit=None):
        jobs = [j for j in self.finished_jobs.get(queue, []) if j["id"] not in self.forgotten]
        return jobs[:limit] if limit is not None else jobs

    def meta(self, jid):
        for jobs in self.finished_jobs.values():
            for j in jobs:
                if j["id"] == jid and jid not in self.forgotten:
                    return dict(j, state="SUCCESS" if j["state"] == "completed" else "FAILURE")
        return None

    def workers(self):
        return {"celery@w1": ["product-family", "image-upload"]}

    def send(self, queue, task_name, data, jid):
        self.sent.append((queue, task_name, data, jid))

    def remove_waiting(self, queue, jid):
        before = len(self.waiting_jobs.get(queue, []))
        self.waiting_jobs[queue] = [j for j in self.waiting_jobs.get(queue, []) if j["id"] != jid]
        return len(self.waiting_jobs[queue]) < before

    def revoke(self, jid):
        self.revoked.append(jid)

    def forget(self, jid):
        self.forgotten.append(jid)

    def retain(self, jid, seconds):
        pass

    def purge(self, queue):
        removed = len(self.waiting_jobs.get(queue, []))
        self.waiting_jobs[queue] = []
        return removed

    def pause(self, queue):
        self.paused.add(queue)

    def resume(self, queue):
        self.paused.discard(queue)


# =========================================================
# Fixtures
# =========================================================

@pytest.fixture()
def store():
    engine = make_engine("sqlite://")
    create_all(engine)
    yield CatalogStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture()
def kv():
    return FakeKeyValueStore()


@pytest.fixture()
def queue():
    return FakeJobQueue()


@pytest.fixture()
def supplier(store):
    return store.create(Supplier, {"code": "A113", "name": "Test Supplier", "is_active": True})
