from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "pagegate:")

_DELETE_IF_VALUE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def set_if_absent(key: str, value: str, ttl_seconds: int) -> bool:
    return bool(get_redis().set(key, value, nx=True, ex=ttl_seconds))


def delete_if_value(key: str, value: str) -> bool:
    """Deletes ``key`` only while it still holds ``value``, atomically."""
    delete_script = get_redis().register_script(_DELETE_IF_VALUE)
    return bool(delete_script(keys=[key], args=[value]))


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except RedisError:
        return False
