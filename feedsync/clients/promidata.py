# feedsync/clients/promidata.py
from typing import Any, Optional

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import PROMIDATA, HTTP_TIMEOUT
from ..errors import TransientError
from ..utils.logger import debug, warn

_backoff = wait_exponential(multiplier=PROMIDATA["retry_base_sec"], max=PROMIDATA["retry_max_sec"])


def _wait(retry_state) -> float:
    # 429 responses tell us how long to back off
    e = retry_state.outcome.exception()
    if isinstance(e, TransientError) and e.retry_after is not None:
        return min(e.retry_after, PROMIDATA["retry_max_sec"])
    return _backoff(retry_state)


def _log_retry(retry_state):
    e = retry_state.outcome.exception()
    warn(f"[promidata] {e} (attempt {retry_state.attempt_number}/{PROMIDATA['max_retries']})")


def _retry_after(r: requests.Response) -> Optional[float]:
    raw = r.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


class PromidataClient:
    """HTTP access to the Promidata feed (manifest, product documents, images)."""

    def __init__(self, base_url: str | None = None, session: requests.Session | None = None,
                 timeout: int = HTTP_TIMEOUT):
        self.base_url = (base_url or PROMIDATA["base_url"]).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def import_url(self) -> str:
        return f"{self.base_url}/Import/Import.txt"

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    @retry(
        reraise=True,
        stop=stop_after_attempt(PROMIDATA["max_retries"]),
        wait=_wait,
        retry=retry_if_exception_type(TransientError),
        before_sleep=_log_retry,
    )
    def request(self, url: str, method: str = "GET") -> requests.Response:
        try:
            r = self.session.request(method, self.url(url), timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"network error on {url}: {e}")
        if r.status_code == 429:
            raise TransientError(f"rate limited on {url}", retry_after=_retry_after(r))
        if r.status_code >= 500:
            raise TransientError(f"server error {r.status_code} on {url}")
        if r.status_code >= 400:
            # other 4xx fail fast
            raise RuntimeError(f"client error {r.status_code} on {url}")
        debug(f"[promidata] {method} {url} -> {r.status_code}")
        return r

    def fetch_text(self, url: str) -> str:
        r = self.request(url)
        r.encoding = r.encoding or "utf-8"
        return r.text

    def fetch_json(self, url: str) -> Any:
        return self.request(url).json()

    def fetch_bytes(self, url: str) -> bytes:
        return self.request(url).content
