from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Generic, Protocol, TypeVar

from kubernetes import watch
from kubernetes.client import ApiException

from ingress_controller.src.metrics import METRICS
from ingress_controller.src.resources import meta_namespace_key


class _Keyed(Protocol):
    @property
    def key(self) -> str: ...


SnapshotT = TypeVar("SnapshotT", bound=_Keyed)


class Lister(Generic[SnapshotT]):
    """Read-only view over an informer's store."""

    def __init__(self, informer: Informer[SnapshotT]) -> None:
        self._informer = informer

    def get(self, namespace: str, name: str) -> SnapshotT | None:
        """Return the cached snapshot, or ``None`` when the object is not in the cache."""
        return self._informer._lookup(meta_namespace_key(namespace, name))

    def list(self) -> list[SnapshotT]:
        return self._informer._items()


class Informer(Generic[SnapshotT]):
    """List-then-watch cache for one resource kind, with change notifications.

    The informer keeps snapshots (not raw API objects) keyed by
    ``namespace/name`` and calls the registered handlers from its own thread:

    * ``on_add(new)`` for objects not previously in the store,
    * ``on_update(old, new)`` for objects already in the store, including
      unchanged objects seen again during a re-list,
    * ``on_delete(last)`` with the final state of a removed object.

    Handlers are expected to be quick and non-blocking; an exception raised
    by a handler is logged and does not stop the informer.

    The loop mirrors the usual list/watch protocol: the initial list is
    retried with jittered exponential backoff, a ``410 Gone`` triggers a
    re-list that is diffed against the store, other watch errors back off
    (1 s to 30 s), and ``401``/``403`` end the loop and clear :attr:`synced`
    since retrying cannot fix missing RBAC permissions.  A failed re-list is
    retried with the same backoff before watching resumes.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        to_snapshot: Callable[[Any], SnapshotT],
        list_kwargs: Mapping[str, Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.list_fn = list_fn
        self.to_snapshot = to_snapshot
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self._store: dict[str, SnapshotT] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[
            tuple[
                Callable[[SnapshotT], None] | None,
                Callable[[SnapshotT, SnapshotT], None] | None,
                Callable[[SnapshotT], None] | None,
            ]
        ] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def lister(self) -> Lister[SnapshotT]:
        return Lister(self)

    @property
    def has_synced(self) -> bool:
        return self.synced.is_set()

    def add_event_handler(
        self,
        on_add: Callable[[SnapshotT], None] | None = None,
        on_update: Callable[[SnapshotT, SnapshotT], None] | None = None,
        on_delete: Callable[[SnapshotT], None] | None = None,
    ) -> None:
        self._handlers.append((on_add, on_update, on_delete))

    def _lookup(self, key: str) -> SnapshotT | None:
        with self._store_lock:
            return self._store.get(key)

    def _items(self) -> list[SnapshotT]:
        with self._store_lock:
            return list(self._store.values())

    def _notify(self, kind: str, *args: SnapshotT) -> None:
        for on_add, on_update, on_delete in self._handlers:
            handler: Callable[..., None] | None = {
                "add": on_add,
                "update": on_update,
                "delete": on_delete,
            }[kind]
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                self.logger.exception("%s %s handler failed", self.resource, kind)

    def _upsert(self, snapshot: SnapshotT) -> None:
        with self._store_lock:
            old = self._store.get(snapshot.key)
            self._store[snapshot.key] = snapshot
        if old is None:
            self._notify("add", snapshot)
        else:
            self._notify("update", old, snapshot)

    def _remove(self, snapshot: SnapshotT) -> None:
        with self._store_lock:
            self._store.pop(snapshot.key, None)
        self._notify("delete", snapshot)

    def _list_and_replace(self) -> str | None:
        """List every object, swap the store, and notify the difference.

        Returns the list's ``resourceVersion`` to resume watching from.
        """
        listing = self.list_fn(**self.list_kwargs)
        fresh: dict[str, SnapshotT] = {}
        for obj in getattr(listing, "items", None) or []:
            snapshot = self.to_snapshot(obj)
            fresh[snapshot.key] = snapshot

        with self._store_lock:
            previous = self._store
            self._store = dict(fresh)

        for key, snapshot in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("add", snapshot)
            else:
                self._notify("update", old, snapshot)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("delete", old)

        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_watch_event(self, event: Mapping[str, Any]) -> str | None:
        """Apply one watch event to the store and return its resourceVersion, if any."""
        obj = event.get("object")
        if obj is None:
            return None

        resource_version = getattr(getattr(obj, "metadata", None), "resource_version", None)
        event_type = str(event.get("type", ""))
        if event_type in {"ADDED", "MODIFIED"}:
            self._upsert(self.to_snapshot(obj))
        elif event_type == "DELETED":
            self._remove(self.to_snapshot(obj))
        elif event_type != "BOOKMARK":
            self.logger.debug("Ignoring %s watch event of type %r", self.resource, event_type)
        return resource_version

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
        self.synced.clear()
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.resource,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        return True

    def _backoff(self, stop: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop_event: threading.Event) -> None:
        """List, then watch until *stop_event* is set or access is denied."""
        stop = stop_event
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_replace()
                self.synced.set()
                self.logger.info(
                    "Synced %s cache; watching from resourceVersion %s",
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            backoff_seconds = self._backoff(stop, backoff_seconds)

        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False
        while not self._should_stop(stop):
            if needs_relist:
                try:
                    resource_version = self._list_and_replace()
                    needs_relist = False
                    backoff_seconds = 1
                except ApiException as relist_exc:
                    if self._access_denied(relist_exc, "410 re-list"):
                        return
                    self.logger.exception("Failed to re-list %s after 410", self.resource)
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error re-listing %s", self.resource)
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    backoff_seconds = self._backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    resource_version = self.handle_watch_event(event) or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; re-list
                # and diff so changes made while disconnected are not lost.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.resource)
                    needs_relist = True
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                backoff_seconds = self._backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the informer in a daemon thread and return the thread."""
        self._thread = threading.Thread(
            target=self.run,
            args=(stop_event,),
            name=f"informer-{self.resource}",
            daemon=True,
        )
        self._thread.start()
        return self._thread


def wait_for_cache_sync(
    stop_event: threading.Event,
    *informers: Informer[Any],
    timeout: float | None = None,
    poll_interval: float = 0.1,
) -> bool:
    """Block until every informer has completed its initial list.

    Returns ``False`` if *stop_event* fires or *timeout* elapses first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while not all(informer.has_synced for informer in informers):
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval)
    return True
