#!/usr/bin/env python3
"""
Rate-limited work queue for reconcile workers.

Same contract as the client-go workqueue the Kubernetes controllers use:
- an item queued several times is handed out once
- an item being processed is never handed to a second worker; adding it
  again while it's processing queues it for after done()
- items can be delayed (add_after) or backed off exponentially per item
  (add_rate_limited) until forget() resets their failure count
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Dict, Hashable, Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0


class RateLimitingQueue:
    """Deduplicating, per-item serialized work queue with delayed re-delivery."""

    def __init__(self, name: str = "", base_delay: float = DEFAULT_BASE_DELAY,
                 max_delay: float = DEFAULT_MAX_DELAY, clock=time.monotonic):
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()  # queued, not yet handed out
        self._processing = set()  # handed out, not yet done()
        self._shutting_down = False

        # Delayed items: heap of (ready_at, seq, item); _waiting holds the live ready_at per item
        self._delayed = []
        self._waiting: Dict[Hashable, float] = {}
        self._seq = itertools.count()

        self._failures: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: Hashable):
        """Queue an item for processing."""
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable):
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add_after(self, item: Hashable, delay: float):
        """Queue an item once delay seconds have passed."""
        if delay <= 0:
            self.add(item)
            return

        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._waiting.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting[item] = ready_at
            heapq.heappush(self._delayed, (ready_at, next(self._seq), item))
            # Waiters recompute how long to sleep
            self._cond.notify_all()

    def when(self, item: Hashable) -> float:
        """Next exponential backoff delay for an item, counting it as a failure."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        delay = self.base_delay * (2 ** failures)
        return min(delay, self.max_delay)

    def add_rate_limited(self, item: Hashable):
        """Queue an item after its per-item exponential backoff delay."""
        self.add_after(item, self.when(item))

    def forget(self, item: Hashable):
        """Reset the failure count of an item."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """
        Block until an item is available and mark it as processing.

        Args:
            timeout: Give up after this many seconds; wait forever when None

        Returns:
            The item, or None on shutdown or timeout
        """
        give_up_at = self._clock() + timeout if timeout is not None else None

        with self._cond:
            while True:
                self._promote_ready_locked()

                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    return item

                if self._shutting_down:
                    return None

                now = self._clock()
                wait_for = None
                if self._delayed:
                    wait_for = max(self._delayed[0][0] - now, 0)
                if give_up_at is not None:
                    if now >= give_up_at:
                        return None
                    remaining = give_up_at - now
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def _promote_ready_locked(self):
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._delayed)
            if self._waiting.get(item) != ready_at:
                # Superseded by an earlier add_after
                continue
            del self._waiting[item]
            self._add_locked(item)

    def done(self, item: Hashable):
        """Mark an item as processed; requeue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self):
        """Stop accepting items and wake every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        logger.info(f"Work queue {self.name or '(unnamed)'} shutting down")
