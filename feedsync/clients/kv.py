# feedsync/clients/kv.py
from typing import Optional

import redis

from ..config import REDIS_URL

# compare-and-delete: KEYS[1] holds JSON, ARGV[2] names the field, ARGV[1] the expected value
DELETE_IF_FIELD = """
local raw = redis.call("get", KEYS[1])
if raw then
    local ok, held = pcall(cjson.decode, raw)
    if not ok or type(held) ~= "table" or held[ARGV[2]] ~= ARGV[1] then
        return -1
    end
end
return redis.call("del", unpack(KEYS))
"""


class KeyValueStore:
    """The handful of redis commands the lock service needs."""

    def __init__(self, client: redis.Redis | None = None, url: str | None = None):
        self.client = client or redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        self._delete_if_field = self.client.register_script(DELETE_IF_FIELD)

    def set_if_absent(self, key: str, value: str, ttl_sec: int) -> bool:
        return bool(self.client.set(key, value, ex=ttl_sec, nx=True))

    def set(self, key: str, value: str, ttl_sec: int | None = None):
        self.client.set(key, value, ex=ttl_sec)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.client.delete(*keys))

    def delete_if_field(self, key: str, field: str, expected: str, *also: str) -> int:
        """Atomically delete key (and also) unless its JSON value holds another ``field``.

        Returns the number of keys removed, or -1 when the field did not match.
        """
        return int(self._delete_if_field(keys=[key, *also], args=[expected, field]))

    def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    def ttl(self, key: str) -> int:
        return int(self.client.ttl(key))

    def scan(self, pattern: str) -> list[str]:
        return list(self.client.scan_iter(match=pattern, count=100))

    def ping(self) -> bool:
        return bool(self.client.ping())
