from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from argo_controller.src.keys import ADDED, DELETED, MODIFIED, Notification
from argo_controller.src.kube import ObjectKind
from argo_controller.src.metrics import METRICS


def object_key(obj: Any) -> str | None:
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    namespace = getattr(metadata, "namespace", None)
    return f"{namespace}/{name}" if namespace else name


class Store:
    """Thread-safe local mirror of one object kind, keyed by ``namespace/name``.

    Objects handed out are shared with the informer and must be treated as
    read-only; callers copy before mutating.
    """

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str | None, name: str) -> Any:
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            return self._items.get(key)

    def list(self, namespace: str | None = None) -> list[Any]:
        with self._lock:
            items = list(self._items.values())
        if namespace is None:
            return items
        return [
            obj
            for obj in items
            if getattr(getattr(obj, "metadata", None), "namespace", None) == namespace
        ]

    def upsert(self, obj: Any) -> Any:
        """Insert or replace *obj* and return the previously stored object, if any."""
        key = object_key(obj)
        if key is None:
            return None
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def remove(self, obj: Any) -> Any:
        key = object_key(obj)
        if key is None:
            return None
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: Iterable[Any]) -> list[tuple[str, Any, Any]]:
        """Swap in a full listing and return ``(change_type, obj, old)`` diffs against the previous contents."""
        fresh: dict[str, Any] = {}
        for obj in objects:
            key = object_key(obj)
            if key is not None:
                fresh[key] = obj

        changes: list[tuple[str, Any, Any]] = []
        with self._lock:
            previous = self._items
            self._items = fresh
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                changes.append((ADDED, obj, None))
            elif _resource_version(old) != _resource_version(obj):
                changes.append((MODIFIED, obj, old))
        for key, old in previous.items():
            if key not in fresh:
                changes.append((DELETED, old, None))
        return changes


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class Informer:
    """List-then-watch mirror of one object kind that fans changes out to handlers.

    1. Retries the initial list with jittered exponential backoff so transient
       API startup failures do not crash-loop the process, then marks the
       cache as synced.
    2. Streams a watch from the list's ``resourceVersion``, applying each
       event to the :class:`Store` before notifying handlers.
    3. On ``410 Gone`` re-lists and emits the differences as notifications
       so nothing observed while disconnected is lost.
    4. Every ``resync_seconds`` replays every cached object as a ``MODIFIED``
       notification with identical old and new objects.
    5. ``401`` / ``403`` responses are configuration errors (RBAC) and end
       the loop with a clear log message rather than retrying forever.
    """

    def __init__(
        self,
        kind: ObjectKind,
        list_fn: Callable[..., Any],
        resync_seconds: int = 300,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.resync_seconds = resync_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory
        self.store = Store()
        self.synced = threading.Event()
        self._handlers: list[Callable[[Notification], None]] = []
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()
        self._next_resync: float | None = None

    def add_handler(self, handler: Callable[[Notification], None]) -> None:
        self._handlers.append(handler)

    def _dispatch(self, change_type: str, obj: Any, old: Any = None) -> None:
        notification = Notification(kind=self.kind, change_type=change_type, obj=obj, old=old)
        for handler in self._handlers:
            try:
                handler(notification)
            except Exception:
                self.logger.exception(
                    "%s handler failed for %s event on %s",
                    self.kind.value,
                    change_type,
                    object_key(obj),
                )

    def handle_event(self, change_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        if change_type == DELETED:
            self.store.remove(obj)
            self._dispatch(DELETED, obj)
            return
        if change_type not in {ADDED, MODIFIED}:
            return
        previous = self.store.upsert(obj)
        if previous is None:
            self._dispatch(ADDED, obj)
        else:
            self._dispatch(MODIFIED, obj, previous)

    def relist(self) -> str | None:
        """List every object, reconcile the store, and return the list's ``resourceVersion``."""
        listing = self.list_fn()
        for change_type, obj, old in self.store.replace(getattr(listing, "items", None) or []):
            self._dispatch(change_type, obj, old)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def resync(self) -> None:
        for obj in self.store.list():
            self._dispatch(MODIFIED, obj, obj)

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self.resync_seconds <= 0:
            return
        if self._next_resync is None:
            self._next_resync = now_monotonic + self.resync_seconds
            return
        if now_monotonic >= self._next_resync:
            self.logger.debug("Resyncing %s cache", self.kind.value)
            self.resync()
            self._next_resync = now_monotonic + self.resync_seconds

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        if self.resync_seconds <= 0 or self._next_resync is None:
            return self.watch_timeout_seconds
        remaining = int(self._next_resync - now_monotonic)
        return max(1, min(self.watch_timeout_seconds, remaining))

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind.value,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
        return True

    def run(self, stop_event: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self.relist()
                self.synced.set()
                self.logger.info(
                    "%s cache synced; watching from resourceVersion %s",
                    self.kind.value,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            self._maybe_resync(time.monotonic())
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    version = _resource_version(obj)
                    if version:
                        resource_version = version
                    self.handle_event(str(event.get("type", "")), obj)
                    self._maybe_resync(time.monotonic())
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.kind.value
                    )
                    try:
                        resource_version = self.relist()
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind.value)
                        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "watch"):
                    return
                self.logger.exception("%s watch error", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run,
            args=(stop_event,),
            name=f"{self.kind.value.lower()}-informer",
            daemon=True,
        )
        thread.start()
        return thread


def wait_for_cache_sync(
    informers: Iterable[Informer],
    stop_event: threading.Event,
    timeout_seconds: float,
    poll_seconds: float = 0.1,
) -> bool:
    """Block until every informer has synced; False on timeout or stop."""
    pending = list(informers)
    deadline = time.monotonic() + timeout_seconds
    while pending:
        if stop_event.is_set() or time.monotonic() >= deadline:
            return False
        pending = [informer for informer in pending if not informer.synced.is_set()]
        if pending:
            stop_event.wait(timeout=poll_seconds)
    return True
