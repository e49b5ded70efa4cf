"""Locking primitives shared by the namespace engine.

Two named locks guard the engine's compound operations:

- `ReadWriteLock` around rule file I/O and the table rebuild/swap. Rebuilds
  read the rule file and publish new tables under the read side; the move
  engine rewrites the file and patches the tables under the write side.
- `MoveGuard` serializes structural operations (move, rename, remove) end to
  end and exposes the `moving` flag that the rebuild path checks so it does
  not rebuild from a rule file that is about to change.
"""
import threading
from contextlib import contextmanager
from typing import Iterator


class ReadWriteLock:
    """A writer-preferring readers/writer lock.

    Any number of readers may hold the lock together. A waiting writer blocks
    new readers so that a steady stream of listings cannot starve a move.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class MoveGuard:
    """Serializes structural operations and publishes a 'move in progress' flag.

    The guard is re-entrant so that a remove can delegate to a move on the
    same thread.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._flag = threading.Event()

    @property
    def moving(self) -> bool:
        return self._flag.is_set()

    @contextmanager
    def guard(self) -> Iterator[None]:
        with self._lock:
            self._depth += 1
            self._flag.set()
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._flag.clear()
