"""Per-student asyncio locks shared by the scheduler and the extension engine."""

from __future__ import annotations

import asyncio
from threading import Lock
from typing import Dict, Optional


class StudentLocks:
    """Hands out one ``asyncio.Lock`` per student for the running event loop.

    Locks are dropped whenever a different loop asks for them, since an
    asyncio lock cannot be awaited from a loop other than the one it bound to.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_student(self, student_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._guard:
            if loop is not self._loop:
                self._loop = loop
                self._locks = {}
            lock = self._locks.get(student_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[student_id] = lock
            return lock
