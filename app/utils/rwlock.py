"""Writer-preferring reader-writer lock with bounded waits."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class LockTimeout(TimeoutError):
    pass


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Waiting writers block new readers so a steady stream of queries cannot
    starve an update.  Every acquire takes an optional timeout and the
    context managers raise ``LockTimeout`` when it expires.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self, timeout: float | None = None) -> bool:
        with self._cond:
            ok = self._cond.wait_for(
                lambda: not self._writer and self._waiting_writers == 0,
                timeout,
            )
            if ok:
                self._readers += 1
            return ok

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float | None = None) -> bool:
        with self._cond:
            self._waiting_writers += 1
            try:
                ok = self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0,
                    timeout,
                )
                if ok:
                    self._writer = True
                return ok
            finally:
                self._waiting_writers -= 1
                if not self._writer:
                    # A timed-out writer may have been holding readers back
                    self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self, timeout: float | None = None) -> Iterator[None]:
        if not self.acquire_read(timeout):
            raise LockTimeout("timed out waiting for read lock")
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self, timeout: float | None = None) -> Iterator[None]:
        if not self.acquire_write(timeout):
            raise LockTimeout("timed out waiting for write lock")
        try:
            yield
        finally:
            self.release_write()
