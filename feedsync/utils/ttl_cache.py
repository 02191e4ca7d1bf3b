# feedsync/utils/ttl_cache.py
import time
import threading
from typing import Any, Callable, Hashable


class _Inflight:
    def __init__(self):
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


class TTLCache:
    """Small keyed cache with get-or-compute and explicit invalidation.

    Concurrent callers asking for the same missing key share a single
    computation: the first one computes, the others wait for its result.
    """

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._values: dict[Hashable, tuple[float, Any]] = {}
        self._inflight: dict[Hashable, _Inflight] = {}

    def get(self, key: Hashable, default=None):
        with self._lock:
            hit = self._values.get(key)
            if hit and hit[0] > self._clock():
                return hit[1]
        return default

    def put(self, key: Hashable, value: Any):
        with self._lock:
            self._values[key] = (self._clock() + self.ttl_sec, value)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        with self._lock:
            hit = self._values.get(key)
            if hit and hit[0] > self._clock():
                return hit[1]
            flight = self._inflight.get(key)
            owner = flight is None
            if owner:
                flight = _Inflight()
                self._inflight[key] = flight

        if not owner:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value

        try:
            flight.value = compute()
            with self._lock:
                self._values[key] = (self._clock() + self.ttl_sec, flight.value)
            return flight.value
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._inflight.pop(key, None)
            flight.done.set()

    def invalidate(self, key: Hashable | None = None):
        with self._lock:
            if key is None:
                self._values.clear()
            else:
                self._values.pop(key, None)
