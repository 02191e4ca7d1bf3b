# feedsync/clients/meilisearch.py
import time
from typing import Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import MEILISEARCH, HTTP_TIMEOUT
from ..errors import TransientError
from ..utils.logger import debug, warn


def _headers(api_key: Optional[str]) -> dict:
    h = {"Content-Type": "application/json"}
    if api_key:
        h["Authorization"] = f"Bearer {api_key}"
    return h


def _check(r: requests.Response, what: str) -> requests.Response:
    if r.status_code in (429, 502, 503, 504):
        raise TransientError(f"{what} failed {r.status_code}: {r.text}")
    if r.status_code >= 400:
        raise RuntimeError(f"{what} failed {r.status_code}: {r.text}")
    return r


_retry = retry(
    reraise=True,
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    retry=retry_if_exception_type((TransientError, requests.ConnectionError, requests.Timeout)),
)


class SearchIndexClient:
    """Meilisearch product index over its REST API."""

    def __init__(self, host: str | None = None, api_key: str | None = None, index: str | None = None,
                 session: requests.Session | None = None, timeout: int = HTTP_TIMEOUT):
        self.host = (host or MEILISEARCH["host"]).rstrip("/")
        self.api_key = api_key if api_key is not None else MEILISEARCH["api_key"]
        self.index = index or MEILISEARCH["index"]
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.host}{path}"

    @_retry
    def upsert_document(self, doc_id: str, document: dict) -> dict:
        body = dict(document, id=doc_id)
        r = self.session.post(self._url(f"/indexes/{self.index}/documents"),
                              headers=_headers(self.api_key), json=[body], timeout=self.timeout)
        task = _check(r, f"upsert {doc_id}").json()
        debug(f"[search] enqueued upsert {doc_id} task={task.get('taskUid')}")
        return task

    @_retry
    def delete_document(self, doc_id: str) -> dict:
        r = self.session.delete(self._url(f"/indexes/{self.index}/documents/{doc_id}"),
                                headers=_headers(self.api_key), timeout=self.timeout)
        return _check(r, f"delete {doc_id}").json()

    @_retry
    def get_document(self, doc_id: str) -> Optional[dict]:
        r = self.session.get(self._url(f"/indexes/{self.index}/documents/{doc_id}"),
                             headers=_headers(self.api_key), timeout=self.timeout)
        if r.status_code == 404:
            return None
        return _check(r, f"get {doc_id}").json()

    @_retry
    def get_stats(self) -> dict:
        r = self.session.get(self._url(f"/indexes/{self.index}/stats"),
                             headers=_headers(self.api_key), timeout=self.timeout)
        stats = _check(r, "stats").json()
        return {"documentCount": int(stats.get("numberOfDocuments") or 0),
                "isIndexing": bool(stats.get("isIndexing"))}

    def wait_for_task(self, task_uid: int, timeout_sec: float | None = None,
                      poll_sec: float | None = None) -> dict:
        """Poll a Meilisearch task until it settles. Raises TimeoutError past the deadline."""
        timeout_sec = timeout_sec if timeout_sec is not None else MEILISEARCH["task_timeout_sec"]
        poll_sec = poll_sec if poll_sec is not None else MEILISEARCH["task_poll_sec"]
        deadline = time.monotonic() + timeout_sec
        while True:
            r = self.session.get(self._url(f"/tasks/{task_uid}"),
                                 headers=_headers(self.api_key), timeout=self.timeout)
            task = _check(r, f"task {task_uid}").json()
            status = task.get("status")
            if status in ("succeeded", "failed", "canceled"):
                if status != "succeeded":
                    warn(f"[search] task {task_uid} {status}: {task.get('error')}")
                return task
            if time.monotonic() >= deadline:
                raise TimeoutError(f"meilisearch task {task_uid} still {status} after {timeout_sec}s")
            time.sleep(poll_sec)

    def healthy(self) -> bool:
        try:
            r = self.session.get(self._url("/health"), timeout=5)
            return r.ok and r.json().get("status") == "available"
        except requests.RequestException:
            return False
