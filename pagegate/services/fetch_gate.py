from __future__ import annotations

import os
from collections.abc import Callable
from threading import Lock, Timer
from typing import Any

SEARCH_DEBOUNCE_SECONDS = float(os.getenv("SEARCH_DEBOUNCE_SECONDS", "0.5"))


class RequestSequencer:
    """Monotonic request counter; only the latest issued ticket may apply its result."""

    def __init__(self) -> None:
        self._latest = 0
        self._lock = Lock()

    def issue(self) -> int:
        with self._lock:
            self._latest += 1
            return self._latest

    def is_latest(self, seq: int) -> bool:
        with self._lock:
            return seq == self._latest

    @property
    def latest(self) -> int:
        return self._latest


class Debouncer:
    def __init__(self, delay_seconds: float = SEARCH_DEBOUNCE_SECONDS) -> None:
        self._delay_seconds = delay_seconds
        self._timer: Timer | None = None
        self._lock = Lock()

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = Timer(self._delay_seconds, fn, args=args, kwargs=kwargs)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def flush(self, timeout: float | None = None) -> None:
        with self._lock:
            timer = self._timer
        if timer is not None:
            timer.join(timeout)
