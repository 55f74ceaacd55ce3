"""Per-key locks with a bounded wait.

Each key (``book:<isbn>``, ``loan:<id>``, ``user:<id>``) gets its own lock, so
requests touching different books never wait on each other. Entries are
reference counted and dropped once nobody holds or waits on them.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List

from errors import Busy

logger = logging.getLogger(__name__)


def book_key(isbn: str) -> str:
    return f"book:{isbn}"


def loan_key(loan_id: int) -> str:
    return f"loan:{loan_id}"


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLockRegistry:
    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        """Hold every lock in ``keys`` for the duration of the block.

        Locks are taken in sorted order so two callers asking for overlapping
        sets cannot deadlock. ``timeout`` bounds the total wait; when it runs
        out everything acquired so far is released and ``Busy`` is raised.
        """
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        ordered = sorted(set(keys))
        acquired: List[tuple] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                remaining = max(deadline - time.monotonic(), 0)
                if not entry.lock.acquire(timeout=remaining):
                    self._checkin(key, entry)
                    logger.warning(f"Timed out after {budget}s waiting for lock {key}")
                    raise Busy(f"Resource {key} is busy, try again")
                acquired.append((key, entry))
            yield
        finally:
            for key, entry in reversed(acquired):
                entry.lock.release()
                self._checkin(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
