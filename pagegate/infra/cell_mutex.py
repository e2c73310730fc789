from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache
from threading import Lock, get_ident
from typing import Protocol
from uuid import uuid4

from pagegate.domain.rule_index import canonical_page_key
from pagegate.infra import redis_state

CELL_MUTEX_BACKEND = os.getenv("CELL_MUTEX_BACKEND", "memory")
CELL_MUTEX_TTL_SECONDS = int(os.getenv("CELL_MUTEX_TTL_SECONDS", "30"))
CELL_MUTEX_PREFIX = f"{redis_state.REDIS_KEY_PREFIX}cell:"


class CellBusyError(Exception):
    def __init__(self, key: str) -> None:
        super().__init__(f"cell is busy: {key}")
        self.key = key


class CellMutex(Protocol):
    def try_acquire(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...


def user_role_cell(user_id: str, role_id: str) -> str:
    return f"user-role:{user_id}:{role_id}"


def page_rule_cell(role_id: str, page_key: str) -> str:
    return f"page-rule:{role_id}:{canonical_page_key(page_key)}"


class InMemoryCellMutex:
    """In-flight guard for single matrix cells within one process.

    A held key rejects new attempts instead of queueing them. The internal
    lock only covers the membership check of one key, never the guarded work.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._lock = Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held


class RedisCellMutex:
    """Cell guard shared by every worker through Redis.

    Each acquire stores a fresh token as the value. A holder whose TTL ran
    out cannot release a lock that another holder acquired since. Tokens
    are tracked per thread, so release runs on the acquiring thread.
    """

    def __init__(self, *, ttl_seconds: int = CELL_MUTEX_TTL_SECONDS, prefix: str = CELL_MUTEX_PREFIX) -> None:
        self._ttl_seconds = ttl_seconds
        self._prefix = prefix
        self._tokens: dict[tuple[str, int], str] = {}
        self._lock = Lock()

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def try_acquire(self, key: str) -> bool:
        token = uuid4().hex
        # TTL releases cells abandoned by a crashed worker.
        if not redis_state.set_if_absent(self._redis_key(key), token, self._ttl_seconds):
            return False
        with self._lock:
            self._tokens[(key, get_ident())] = token
        return True

    def release(self, key: str) -> None:
        with self._lock:
            token = self._tokens.pop((key, get_ident()), None)
        if token is None:
            return
        redis_state.delete_if_value(self._redis_key(key), token)


@contextmanager
def hold(mutex: CellMutex, key: str) -> Iterator[str]:
    if not mutex.try_acquire(key):
        raise CellBusyError(key)
    try:
        yield key
    finally:
        mutex.release(key)


@lru_cache(maxsize=1)
def get_cell_mutex() -> CellMutex:
    if CELL_MUTEX_BACKEND == "redis":
        return RedisCellMutex()
    return InMemoryCellMutex()
