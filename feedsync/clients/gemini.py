# feedsync/clients/gemini.py
import json
import time
from typing import Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import GEMINI, HTTP_TIMEOUT
from ..errors import TransientError
from ..utils.logger import debug, info

_retry = retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((TransientError, requests.ConnectionError, requests.Timeout)),
)


def _check(r: requests.Response, what: str) -> requests.Response:
    if r.status_code in (429, 500, 502, 503, 504):
        raise TransientError(f"{what} failed {r.status_code}: {r.text}")
    if r.status_code >= 400:
        raise RuntimeError(f"{what} failed {r.status_code}: {r.text}")
    return r


class FileSearchClient:
    """Gemini File Search store (REST v1beta)."""

    def __init__(self, api_key: str | None = None, store: str | None = None, base_url: str | None = None,
                 session: requests.Session | None = None, timeout: int = HTTP_TIMEOUT):
        self.api_key = api_key if api_key is not None else GEMINI["api_key"]
        self.store = store if store is not None else GEMINI["store"]
        self.base_url = (base_url or GEMINI["base_url"]).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.store)

    def _params(self, **extra) -> dict:
        return {"key": self.api_key, **extra}

    @_retry
    def upload_json(self, display_name: str, payload: dict) -> dict:
        url = f"{self.base_url}/upload/v1beta/{self.store}:uploadToFileSearchStore"
        files = {
            "metadata": (None, json.dumps({"displayName": display_name}), "application/json"),
            "file": (display_name, json.dumps(payload, ensure_ascii=False).encode("utf-8"), "application/json"),
        }
        r = self.session.post(url, params=self._params(), files=files,
                              headers={"X-Goog-Upload-Protocol": "multipart"}, timeout=self.timeout)
        return _check(r, f"upload {display_name}").json()

    @_retry
    def get_operation(self, name: str) -> dict:
        r = self.session.get(f"{self.base_url}/v1beta/{name}", params=self._params(), timeout=self.timeout)
        return _check(r, f"operation {name}").json()

    def wait_for_operation(self, op: dict, poll_sec: float | None = None, max_polls: int | None = None) -> dict:
        poll_sec = poll_sec if poll_sec is not None else GEMINI["operation_poll_sec"]
        max_polls = max_polls if max_polls is not None else GEMINI["operation_max_polls"]
        polls = 0
        while not op.get("done"):
            if polls >= max_polls:
                raise TimeoutError(f"upload operation {op.get('name')} not done after {polls * poll_sec:.0f}s")
            time.sleep(poll_sec)
            op = self.get_operation(op["name"])
            polls += 1
        if op.get("error"):
            raise RuntimeError(f"upload operation failed: {op['error']}")
        return op

    def upload_and_wait(self, display_name: str, payload: dict) -> Optional[str]:
        """Upload a document and return its resource name once indexed."""
        op = self.wait_for_operation(self.upload_json(display_name, payload))
        name = (op.get("response") or {}).get("documentName") or (op.get("response") or {}).get("name")
        info(f"[semantic] uploaded {display_name}")
        return name

    @_retry
    def delete_document(self, document_name: str) -> bool:
        r = self.session.delete(f"{self.base_url}/v1beta/{document_name}",
                                params=self._params(force="true"), timeout=self.timeout)
        if r.status_code == 404:
            debug(f"[semantic] {document_name} already gone")
            return False
        _check(r, f"delete {document_name}")
        return True

    @_retry
    def get_store(self) -> dict:
        r = self.session.get(f"{self.base_url}/v1beta/{self.store}", params=self._params(), timeout=self.timeout)
        return _check(r, "store").json()
