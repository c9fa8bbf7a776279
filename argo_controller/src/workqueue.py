from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from argo_controller.src.metrics import METRICS


class RateLimitingQueue:
    """Deduplicating work queue of reconciliation keys with per-key backoff.

    Semantics:

    - ``add`` of a key that is already pending is a no-op.
    - A key handed out by ``get`` is *processing* until ``done`` is called.
      Re-adding it meanwhile marks it dirty; it is queued again exactly once
      when ``done`` runs, so two workers never hold the same key.
    - ``add_rate_limited`` schedules redelivery after
      ``base_delay * 2 ** failures`` seconds (capped at ``max_delay``).  Once a
      key has been requeued ``max_retries`` times it is dropped instead and its
      failure count reset; the next resync re-adds it.
    - ``forget`` clears the failure count after a successful run.
    - ``shut_down`` stops accepting adds, discards pending keys and makes every
      ``get`` report shutdown.  With ``drain=True`` it also waits for in-flight
      keys to be marked done.

    Key internal state:
        ``_queue``
            FIFO of keys ready to be handed out.
        ``_dirty``
            Keys that need processing (queued, or re-added while processing).
        ``_processing``
            Keys currently held by a worker.
        ``_failures``
            Per-key count of rate-limited requeues since the last ``forget``.
        ``_waiting`` / ``_waiting_until``
            Min-heap of delayed adds and the earliest due time per key.
    """

    def __init__(
        self,
        name: str,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_retries: int = 15,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_until: dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False
        self._waiter: threading.Thread | None = None
        METRICS.queue_depth.labels(controller=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _publish_depth(self) -> None:
        METRICS.queue_depth.labels(controller=self.name).set(len(self._queue))

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._publish_depth()
        self._cond.notify_all()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def get(self) -> tuple[str | None, bool]:
        """Block until a key is available; return ``(key, False)`` or ``(None, True)`` on shutdown."""
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if self._shutting_down:
                return None, True
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._publish_depth()
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._publish_depth()
            self._cond.notify_all()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self.clock() + delay
            existing = self._waiting_until.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting_until[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            if self._waiter is None:
                self._waiter = threading.Thread(
                    target=self._waiting_loop,
                    name=f"{self.name}-delayed-adds",
                    daemon=True,
                )
                self._waiter.start()
            self._cond.notify_all()

    def _waiting_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = self.clock()
                while self._waiting and self._waiting[0][0] <= now:
                    due_at, _, key = heapq.heappop(self._waiting)
                    # Superseded by an earlier schedule for the same key.
                    if self._waiting_until.get(key) != due_at:
                        continue
                    del self._waiting_until[key]
                    self._add_locked(key)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout=timeout)

    def add_rate_limited(self, key: str) -> float | None:
        """Requeue *key* with backoff and return the delay, or None when the retry ceiling drops it."""
        with self._cond:
            failures = self._failures.get(key, 0)
            if failures >= self.max_retries:
                self._failures.pop(key, None)
                METRICS.dropped_keys_total.labels(controller=self.name).inc()
                self.logger.error(
                    "Dropping %s from %s queue after %d retries", key, self.name, failures
                )
                return None
            self._failures[key] = failures + 1
        delay = min(self.max_delay, self.base_delay * (2**failures))
        METRICS.retries_total.labels(controller=self.name).inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def shut_down(self, drain: bool = False, timeout: float | None = None) -> bool:
        """Stop the queue.  Returns False if draining timed out with keys still in flight."""
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._waiting_until.clear()
            self._publish_depth()
            self._cond.notify_all()
            if not drain:
                return True
            deadline = None if timeout is None else self.clock() + timeout
            while self._processing:
                remaining = None if deadline is None else deadline - self.clock()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
            return True
