from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ExportGate:
    """Counting barrier between the sampler and scrape handlers.

    The sampler holds the gate while it writes a cycle into the catalog;
    scrapes wait until no write is running, then read without locking each
    other out.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._active = 0

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def enter(self) -> None:
        with self._cond:
            self._active += 1

    def leave(self) -> None:
        with self._cond:
            if self._active == 0:
                raise RuntimeError("ExportGate.leave() without matching enter()")
            self._active -= 1
            if self._active == 0:
                self._cond.notify_all()

    @contextmanager
    def cycle(self) -> Iterator[None]:
        self.enter()
        try:
            yield
        finally:
            self.leave()

    def wait_clear(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._active == 0, timeout=timeout)
