from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from kubernetes.client import CoreV1Api, NetworkingV1Api

from ingress_controller.src.events import DerivedDeleted, Event, SourceAdded, SourceUpdated
from ingress_controller.src.informer import Informer, Lister, wait_for_cache_sync
from ingress_controller.src.ingress import build_ingress
from ingress_controller.src.kube import create_ingress, delete_ingress
from ingress_controller.src.metrics import METRICS
from ingress_controller.src.resources import (
    OWNER_KIND,
    TRIGGER_ANNOTATION,
    DerivedSnapshot,
    SourceSnapshot,
    controller_of,
    derived_snapshot_from_ingress,
    is_owned_by_service,
    source_snapshot_from_service,
    split_meta_namespace_key,
)
from ingress_controller.src.runtime import handle_error
from ingress_controller.src.workqueue import (
    RateLimitingQueue,
    ShutDown,
    default_controller_rate_limiter,
)

QUEUE_NAME = "ingress-manager"
DEFAULT_WORKERS = 5
DEFAULT_MAX_RETRIES = 10


class SyncAction(str, Enum):
    """The single mutation (if any) issued by one reconciliation."""

    CREATED = "created"
    DELETED = "deleted"
    NONE = "none"


class IngressManager:
    """Keeps an Ingress in step with the ``ingress/http`` annotation of each Service.

    Informer callbacks translate notifications into ``namespace/name`` keys on
    a rate-limited work queue.  A pool of worker threads pulls keys off the
    queue and runs :meth:`sync_service`, a level-triggered reconcile that
    compares the cached Service and Ingress and issues at most one create or
    delete.  Failed keys are retried with per-key backoff until
    ``max_retries`` is exceeded, then reported to ``error_handler`` and
    forgotten.

    The queue guarantees a key is never processed by two workers at once; a
    key re-added while in flight is processed once more afterwards.

    Deleting a Service is deliberately not handled: the Ingress carries a
    controller owner reference, so the garbage collector removes it.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        service_lister: Lister[SourceSnapshot],
        ingress_lister: Lister[DerivedSnapshot],
        queue: RateLimitingQueue | None = None,
        workers: int = DEFAULT_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        error_handler: Callable[[BaseException], None] = handle_error,
        worker_restart_seconds: float = 60.0,
        cache_check_seconds: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.networking_api = networking_api
        self.service_lister = service_lister
        self.ingress_lister = ingress_lister
        if queue is None:
            queue = RateLimitingQueue(default_controller_rate_limiter(), name=QUEUE_NAME)
        self.queue = queue
        self.workers = workers
        self.max_retries = max_retries
        self.error_handler = error_handler
        self.worker_restart_seconds = worker_restart_seconds
        self.cache_check_seconds = cache_check_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.informers: tuple[Informer[Any], ...] = ()
        self.ready = threading.Event()
        self.failed = False

    @classmethod
    def from_informers(
        cls,
        networking_api: NetworkingV1Api,
        service_informer: Informer[SourceSnapshot],
        ingress_informer: Informer[DerivedSnapshot],
        **kwargs: Any,
    ) -> IngressManager:
        """Build a manager reading from the informers' caches and subscribed to their events."""
        manager = cls(
            networking_api=networking_api,
            service_lister=service_informer.lister,
            ingress_lister=ingress_informer.lister,
            **kwargs,
        )
        service_informer.add_event_handler(
            on_add=manager.on_service_added,
            on_update=manager.on_service_updated,
        )
        ingress_informer.add_event_handler(on_delete=manager.on_ingress_deleted)
        manager.informers = (service_informer, ingress_informer)
        return manager

    # Event translation

    def on_service_added(self, service: SourceSnapshot) -> None:
        self.handle_event(SourceAdded(service))

    def on_service_updated(self, old: SourceSnapshot, new: SourceSnapshot) -> None:
        self.handle_event(SourceUpdated(old, new))

    def on_ingress_deleted(self, ingress: DerivedSnapshot) -> None:
        self.handle_event(DerivedDeleted(ingress))

    def handle_event(self, event: Event) -> bool:
        """Translate one notification into a queue insertion.

        Returns ``True`` when a key was enqueued.  Unchanged Service updates
        (for example a re-list replaying the same object) are dropped, and
        an Ingress deletion only matters when a Service controlled it; the
        Ingress shares its ``namespace/name`` with that Service.
        """
        if isinstance(event, SourceAdded):
            key = event.source.key
        elif isinstance(event, SourceUpdated):
            if event.old == event.new:
                return False
            key = event.new.key
        elif isinstance(event, DerivedDeleted):
            owner = controller_of(event.derived)
            if owner is None or owner.kind != OWNER_KIND:
                return False
            key = event.derived.key
        else:
            raise TypeError(f"unsupported event: {event!r}")

        self.logger.debug("Enqueueing %s after %s", key, type(event).__name__)
        self.queue.add(key)
        return True

    # Reconciliation

    def sync_service(self, key: str) -> SyncAction:
        """Reconcile the Ingress for the Service named by *key*.

        ====================  ==================  ===========================
        annotation present    Ingress in cache    action
        ====================  ==================  ===========================
        yes                   no                  create the desired Ingress
        yes                   yes                 nothing (drift ignored)
        no                    yes                 delete, if a Service owns it
        no                    no                  nothing
        ====================  ==================  ===========================

        A Service missing from the cache was deleted; nothing to do.  API and
        lookup failures propagate so the caller can requeue the key.
        """
        namespace, name = split_meta_namespace_key(key)

        service = self.service_lister.get(namespace, name)
        if service is None:
            self.logger.debug("Service %s no longer exists; skipping", key)
            return SyncAction.NONE

        desired = TRIGGER_ANNOTATION in service.annotations
        ingress = self.ingress_lister.get(namespace, name)

        if desired and ingress is None:
            create_ingress(self.networking_api, namespace, build_ingress(service))
            METRICS.ingress_mutations_total.labels(action="create").inc()
            self.logger.info("Created Ingress %s for annotated Service", key)
            return SyncAction.CREATED

        if not desired and ingress is not None:
            if not is_owned_by_service(ingress):
                self.logger.info(
                    "Ingress %s is not controlled by a Service; leaving it in place", key
                )
                return SyncAction.NONE
            if delete_ingress(self.networking_api, namespace, name):
                METRICS.ingress_mutations_total.labels(action="delete").inc()
                self.logger.info("Deleted Ingress %s after annotation removal", key)
            return SyncAction.DELETED

        return SyncAction.NONE

    def handle_error(self, key: str, err: BaseException) -> None:
        """Requeue *key* with backoff, or give up once its retry budget is spent.

        A key gets ``max_retries`` requeues, so it is attempted at most
        ``max_retries + 1`` times in a row before being dropped.  Dropping
        forgets the count; the next event for the key starts from zero.
        """
        retries = self.queue.num_requeues(key)
        if retries < self.max_retries:
            METRICS.requeues_total.inc()
            self.queue.add_rate_limited(key)
            return

        METRICS.dropped_keys_total.inc()
        self.logger.warning("Dropping %s from the queue after %d retries", key, retries)
        self.error_handler(err)
        self.queue.forget(key)

    def _reconcile(self, key: str) -> None:
        started = time.monotonic()
        try:
            action = self.sync_service(key)
        except Exception as exc:
            METRICS.reconciles_total.labels(result="error").inc()
            self.logger.warning("Error syncing Service %s: %s", key, exc)
            self.handle_error(key, exc)
        else:
            METRICS.reconciles_total.labels(result="success").inc()
            self.logger.debug("Synced Service %s (action=%s)", key, action.value)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

    def process_next_item(self) -> bool:
        """Handle one key from the queue.  Returns ``False`` once the queue has shut down."""
        try:
            key = self.queue.get()
        except ShutDown:
            return False

        try:
            self._reconcile(str(key))
        finally:
            self.queue.done(key)
        return True

    # Worker pool

    def _run_worker(self, stop_event: threading.Event) -> None:
        while True:
            try:
                while self.process_next_item():
                    pass
                return
            except Exception:
                self.logger.exception(
                    "Worker loop crashed; restarting in %.0fs", self.worker_restart_seconds
                )
            if stop_event.wait(timeout=self.worker_restart_seconds):
                return

    def start_informers(self, stop_event: threading.Event) -> None:
        for informer in self.informers:
            informer.start(stop_event)

    def wait_for_cache_sync(
        self, stop_event: threading.Event, timeout: float | None = None
    ) -> bool:
        return wait_for_cache_sync(stop_event, *self.informers, timeout=timeout)

    def run(self, stop_event: threading.Event) -> None:
        """Run the worker pool until *stop_event* is set, then drain and return.

        Callers should start the informers and wait for their caches first so
        the initial list has populated the queue.  If an informer loses its
        sync (it stops on an access error) the manager sets *stop_event*
        itself and records the cause in :attr:`failed`.
        """
        self.failed = False
        threads = [
            threading.Thread(
                target=self._run_worker,
                args=(stop_event,),
                name=f"{QUEUE_NAME}-worker-{index}",
                daemon=True,
            )
            for index in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        self.ready.set()
        self.logger.info("Started %d workers", self.workers)

        while not stop_event.wait(timeout=self.cache_check_seconds):
            stale = [informer.resource for informer in self.informers if not informer.has_synced]
            if stale:
                self.logger.error(
                    "Informer cache for %s is no longer synced; stopping controller",
                    ", ".join(stale),
                )
                self.failed = True
                stop_event.set()

        self.logger.info("Shutting down work queue")
        self.ready.clear()
        self.queue.shutdown()
        for thread in threads:
            thread.join()
        self.logger.info("All workers stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_informers(
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
    namespace: str = "",
) -> tuple[Informer[SourceSnapshot], Informer[DerivedSnapshot]]:
    """Return Service and Ingress informers, cluster-wide or scoped to *namespace*."""
    if namespace:
        service_list, ingress_list = (
            core_api.list_namespaced_service,
            networking_api.list_namespaced_ingress,
        )
        list_kwargs = {"namespace": namespace}
    else:
        service_list, ingress_list = (
            core_api.list_service_for_all_namespaces,
            networking_api.list_ingress_for_all_namespaces,
        )
        list_kwargs = {}

    service_informer = Informer(
        resource="services",
        list_fn=service_list,
        to_snapshot=source_snapshot_from_service,
        list_kwargs=list_kwargs,
    )
    ingress_informer = Informer(
        resource="ingresses",
        list_fn=ingress_list,
        to_snapshot=derived_snapshot_from_ingress,
        list_kwargs=list_kwargs,
    )
    return service_informer, ingress_informer


def build_controller_from_env(
    core_api: CoreV1Api, networking_api: NetworkingV1Api
) -> IngressManager:
    """Construct an :class:`IngressManager` and its informers from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: Namespace to watch; empty means all namespaces (``""``).
        ``WORKER_COUNT``: Concurrent reconcile workers (``5``).
        ``MAX_RETRIES``: Requeues allowed per key before it is dropped (``10``).
        ``QUEUE_BASE_DELAY_MS``: First per-key retry delay (``5``).
        ``QUEUE_MAX_DELAY_SECONDS``: Cap on the per-key retry delay (``1000``).
        ``QUEUE_QPS`` / ``QUEUE_BURST``: Overall retry token bucket (``10`` / ``100``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()
    workers = env_int("WORKER_COUNT", DEFAULT_WORKERS, minimum=1)
    max_retries = env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0)
    base_delay_ms = env_int("QUEUE_BASE_DELAY_MS", 5, minimum=0)
    max_delay_seconds = env_int("QUEUE_MAX_DELAY_SECONDS", 1000, minimum=1)
    qps = env_int("QUEUE_QPS", 10, minimum=1)
    burst = env_int("QUEUE_BURST", 100, minimum=1)

    rate_limiter = default_controller_rate_limiter(
        base_delay=base_delay_ms / 1000.0,
        max_delay=float(max_delay_seconds),
        qps=float(qps),
        burst=burst,
    )
    service_informer, ingress_informer = build_informers(core_api, networking_api, namespace)
    return IngressManager.from_informers(
        networking_api=networking_api,
        service_informer=service_informer,
        ingress_informer=ingress_informer,
        queue=RateLimitingQueue(rate_limiter, name=QUEUE_NAME),
        workers=workers,
        max_retries=max_retries,
    )
