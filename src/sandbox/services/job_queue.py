from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional

from ..core.errors import DispatcherClosed, QueueSaturated
from ..core.models import Job


class JobQueue:
    """Bounded FIFO of admitted jobs.

    ``offer`` never blocks: a full queue raises QueueSaturated, a closed one
    DispatcherClosed. ``take``
    blocks while the queue is empty and returns None once closed.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: Deque[Job] = deque()
        self._cond = threading.Condition()
        self._closed = False

    def offer(self, job: Job) -> None:
        with self._cond:
            if self._closed:
                raise DispatcherClosed()
            if len(self._items) >= self.capacity:
                raise QueueSaturated(self.capacity)
            self._items.append(job)
            self._cond.notify()

    def take(self, timeout: Optional[float] = None) -> Optional[Job]:
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                return None
            if self._items:
                return self._items.popleft()
            return None

    def remove(self, job_id: str) -> bool:
        with self._cond:
            for job in self._items:
                if job.job_id == job_id:
                    self._items.remove(job)
                    return True
            return False

    def drain(self) -> list:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)
