# feedsync/services/sync_lock.py
import json
import os
import random
import socket
import string
import time
from datetime import datetime, timezone
from typing import Optional

from ..config import LOCK_TTL_SEC, STOP_TTL_SEC, ACTIVE_SYNCS_CACHE_SEC
from ..utils.logger import info, warn
from ..utils.ttl_cache import TTLCache

PROMIDATA = "promidata"
GEMINI = "gemini"
TARGETS = (PROMIDATA, GEMINI)


def lock_key(target: str, scope: str | int) -> str:
    return f"sync:{target}:lock:{scope}"


def stop_key(target: str, scope: str | int) -> str:
    return f"sync:{target}:stop:{scope}"


def new_sync_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}-{rand}"


class SyncLockService:
    """Run locks and stop signals in the shared key-value store.

    A lock is a set-if-absent key with a TTL (the backstop for crashed
    holders). Its value is ``{lockedAt, lockedBy, syncId}``. The stop flag
    is a separate shorter-lived key that running loops poll.
    """

    def __init__(self, kv, lock_ttl: int = LOCK_TTL_SEC, stop_ttl: int = STOP_TTL_SEC,
                 cache_ttl: float = ACTIVE_SYNCS_CACHE_SEC, instance_id: str | None = None):
        self.kv = kv
        self.lock_ttl = lock_ttl
        self.stop_ttl = stop_ttl
        self.instance_id = instance_id or f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}"
        self._active = TTLCache(cache_ttl)

    def acquire(self, target: str, scope: str | int) -> Optional[str]:
        sync_id = new_sync_id()
        value = json.dumps({
            "lockedAt": datetime.now(timezone.utc).isoformat(),
            "lockedBy": self.instance_id,
            "syncId": sync_id,
        })
        if self.kv.set_if_absent(lock_key(target, scope), value, self.lock_ttl):
            self._active.invalidate()
            info(f"[lock] acquired {target}:{scope} ({sync_id})")
            return sync_id
        warn(f"[lock] {target}:{scope} already running")
        return None

    def release(self, target: str, scope: str | int, sync_id: str | None = None) -> bool:
        if sync_id is None:
            removed = self.kv.delete(lock_key(target, scope), stop_key(target, scope))
        else:
            removed = self.kv.delete_if_field(lock_key(target, scope), "syncId", sync_id, stop_key(target, scope))
            if removed < 0:
                warn(f"[lock] {target}:{scope} is held by another run, not releasing for {sync_id}")
                return False
        self._active.invalidate()
        info(f"[lock] released {target}:{scope}")
        return removed > 0

    def is_locked(self, target: str, scope: str | int) -> bool:
        return self.kv.exists(lock_key(target, scope))

    def get_lock_info(self, target: str, scope: str | int) -> Optional[dict]:
        raw = self.kv.get(lock_key(target, scope))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return {"raw": raw}

    def status(self, target: str, scope: str | int) -> dict:
        lock = self.get_lock_info(target, scope)
        return {"isRunning": lock is not None, "lockInfo": lock,
                "stopRequested": self.is_stop_requested(target, scope)}

    def request_stop(self, target: str, scope: str | int) -> bool:
        if not self.is_locked(target, scope):
            warn(f"[lock] stop requested for {target}:{scope} but nothing is running")
            return False
        self.kv.set(stop_key(target, scope), "true", self.stop_ttl)
        info(f"[lock] stop requested for {target}:{scope}")
        return True

    def is_stop_requested(self, target: str, scope: str | int) -> bool:
        return self.kv.get(stop_key(target, scope)) == "true"

    def clear_stop(self, target: str, scope: str | int):
        self.kv.delete(stop_key(target, scope))

    def _scan_active(self) -> dict:
        out = {t: [] for t in TARGETS}
        for target in TARGETS:
            prefix = lock_key(target, "")
            for key in sorted(self.kv.scan(f"{prefix}*")):
                scope = key[len(prefix):]
                out[target].append({"scope": scope, "lockInfo": self.get_lock_info(target, scope),
                                    "stopRequested": self.is_stop_requested(target, scope)})
        return out

    def get_all_active_syncs(self) -> dict:
        return self._active.get_or_compute("all", self._scan_active)

    def force_release_all_locks(self) -> int:
        keys = []
        for target in TARGETS:
            keys += self.kv.scan(f"sync:{target}:lock:*") + self.kv.scan(f"sync:{target}:stop:*")
        removed = self.kv.delete(*keys) if keys else 0
        self._active.invalidate()
        warn(f"[lock] force released {removed} lock/stop keys")
        return removed
