from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from argo_controller.src.convergence import ReconcileError
from argo_controller.src.keys import Notification
from argo_controller.src.metrics import METRICS
from argo_controller.src.workqueue import RateLimitingQueue


class Controller:
    """Fixed pool of worker threads draining a :class:`RateLimitingQueue`.

    ``sync_fn(key)`` runs one reconciliation to completion.  Returning
    normally counts as success (``forget`` + ``done``); raising schedules a
    backoff retry (``done`` + ``add_rate_limited``).  A failing key is logged
    and never stops the worker.  The queue guarantees a key is never held by
    two workers, so ``sync_fn`` needs no per-key locking.
    """

    def __init__(
        self,
        name: str,
        queue: RateLimitingQueue,
        sync_fn: Callable[[str], object],
        workers: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.name = name
        self.queue = queue
        self.sync_fn = sync_fn
        self.workers = workers
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._threads: list[threading.Thread] = []

    def notification_handler(
        self, key_fn: Callable[[Notification], str | None]
    ) -> Callable[[Notification], None]:
        """Return an informer callback that routes notifications through *key_fn*."""

        def _handle(notification: Notification) -> None:
            key = key_fn(notification)
            if key is not None:
                self.queue.add(key)

        return _handle

    def process_next_item(self) -> bool:
        """Handle one key.  Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        started = time.monotonic()
        try:
            self.sync_fn(key)
        except ReconcileError as exc:
            self._record_failure(key, exc, with_traceback=False)
        except Exception as exc:
            self._record_failure(key, exc, with_traceback=True)
        else:
            self.queue.forget(key)
            self.queue.done(key)
            METRICS.reconciles_total.labels(controller=self.name, result="success").inc()
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )
        return True

    def _record_failure(self, key: str, exc: Exception, *, with_traceback: bool) -> None:
        METRICS.reconciles_total.labels(controller=self.name, result="error").inc()
        attempt = self.queue.num_requeues(key) + 1
        if with_traceback:
            self.logger.exception("Error syncing %s (attempt %d)", key, attempt)
        else:
            self.logger.error("Error syncing %s (attempt %d): %s", key, attempt, exc)
        self.queue.done(key)
        delay = self.queue.add_rate_limited(key)
        if delay is not None:
            self.logger.info("Requeued %s with backoff %.1fs", key, delay)

    def _worker_loop(self) -> None:
        while self.process_next_item():
            pass

    def run(self, stop_event: threading.Event, drain_timeout: float | None = 30.0) -> None:
        """Start the workers and block until *stop_event* is set.

        On stop the queue refuses new work, in-flight runs finish (bounded by
        ``drain_timeout``), and the worker threads are joined.
        """
        self.logger.info("Starting %s controller with %d worker(s)", self.name, self.workers)
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"{self.name}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        self.ready.set()

        stop_event.wait()

        self.ready.clear()
        self.logger.info("Shutting down %s controller", self.name)
        if not self.queue.shut_down(drain=True, timeout=drain_timeout):
            self.logger.error(
                "In-flight reconciliations did not finish within %ss", drain_timeout
            )
        for thread in self._threads:
            thread.join(timeout=drain_timeout)
        self._threads.clear()
        self.logger.info("%s controller stopped", self.name)
