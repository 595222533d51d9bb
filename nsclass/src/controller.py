from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from nsclass.src.class_reconciler import ClassReconciler
from nsclass.src.config import (
    ATTACHED_CLASS_ANNOTATION,
    CLASS_GROUP,
    CLASS_LABEL,
    CLASS_PLURAL,
    CLASS_VERSION,
    ControllerConfig,
)
from nsclass.src.errors import ReconcileError
from nsclass.src.kube import KubeStore, to_dict
from nsclass.src.mapper import ReconcileRequest, requests_for_class
from nsclass.src.metrics import METRICS
from nsclass.src.namespace_reconciler import NamespaceReconciler
from nsclass.src.workqueue import WorkQueue

EventHandler = Callable[[str, dict[str, Any]], None]


class ResourceWatcher:
    """List-then-watch loop for one resource type, feeding events to a handler.

    Every object of the initial list (and of any re-list) is delivered as an
    ``ADDED`` event so the handler sees a full resync.  ``ready`` is set once
    the initial list succeeded.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        list_kwargs: dict[str, Any] | None = None,
        convert: Callable[[Any], dict[str, Any]] = to_dict,
        timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.list_fn = list_fn
        self.handler = handler
        self.list_kwargs = dict(list_kwargs or {})
        self.convert = convert
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _deliver(self, event_type: str, obj: dict[str, Any]) -> None:
        try:
            self.handler(event_type, obj)
        except Exception:
            name = (obj.get("metadata") or {}).get("name")
            self.logger.exception(
                "Failed to handle %s event for %s %s", event_type, self.resource, name
            )

    def list_and_sync(self) -> str | None:
        """List every object, deliver it as ``ADDED`` and return the list resourceVersion."""
        listing = self.convert(self.list_fn(**self.list_kwargs))
        for item in listing.get("items") or []:
            self._deliver("ADDED", item)
        return (listing.get("metadata") or {}).get("resourceVersion")

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` (etcd compaction), re-lists and resumes.
        4. On transient errors, backs off with jitter (capped at 30 s).

        ``401`` / ``403`` responses are treated as configuration errors
        (RBAC/auth) and end the loop with a clear log message rather than
        retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.list_and_sync()
                self.ready.set()
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", self.resource, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial %s list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
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
                    timeout_seconds=self.timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    event_type = str(event.get("type", ""))
                    if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
                        continue
                    raw = event.get("object")
                    if raw is None:
                        continue

                    obj = self.convert(raw)
                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        resource_version = version
                    self._deliver(event_type, obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; take a
                # fresh snapshot and resume from it.
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.resource
                    )
                    try:
                        resource_version = self.list_and_sync()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during %s re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                self.resource,
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API %s watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


class WorkerPool:
    """Bounded pool of threads draining one work queue into a reconcile function."""

    def __init__(
        self,
        name: str,
        queue: WorkQueue[ReconcileRequest],
        reconcile: Callable[[str], object],
        concurrency: int,
        logger: logging.Logger | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.name = name
        self.queue = queue
        self.reconcile = reconcile
        self.concurrency = concurrency
        self.logger = logger or logging.getLogger(__name__)
        self._threads: list[threading.Thread] = []

    def process(self, request: ReconcileRequest) -> bool:
        """Reconcile one request; on failure re-queue it with backoff.

        Returns ``True`` when the reconcile succeeded.
        """
        try:
            self.reconcile(request.name)
        except ReconcileError as exc:
            delay = self.queue.add_rate_limited(request)
            self.logger.warning(
                "Reconcile of %s %s failed in phase %s: %s; retrying in %.1fs",
                self.name,
                request.name,
                exc.phase,
                exc,
                delay,
                extra={"phase": exc.phase, self.name: request.name},
            )
            return False
        except Exception:
            delay = self.queue.add_rate_limited(request)
            self.logger.exception(
                "Unexpected error reconciling %s %s; retrying in %.1fs",
                self.name,
                request.name,
                delay,
            )
            return False
        finally:
            self.queue.done(request)
        self.queue.forget(request)
        return True

    def _run(self) -> None:
        while True:
            request = self.queue.get()
            if request is None:
                return
            self.process(request)

    def start(self) -> None:
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._run, name=f"{self.name}-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]


class NamespaceClassController:
    """Wires watches, work queues and the two reconcilers together.

    Namespace events enqueue the namespace itself.  NamespaceClass events
    enqueue the class for the class reconciler and, through the fan-out
    mapper, every namespace attached to it for the namespace reconciler.
    """

    def __init__(
        self,
        store: Any,
        namespace_reconciler: NamespaceReconciler,
        class_reconciler: ClassReconciler,
        *,
        namespace_concurrency: int = 10,
        class_concurrency: int = 2,
        retry_max_backoff_seconds: float = 300.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.namespace_queue: WorkQueue[ReconcileRequest] = WorkQueue(
            "namespace", max_delay=retry_max_backoff_seconds
        )
        self.class_queue: WorkQueue[ReconcileRequest] = WorkQueue(
            "namespaceclass", max_delay=retry_max_backoff_seconds
        )
        self.namespace_workers = WorkerPool(
            "namespace",
            self.namespace_queue,
            namespace_reconciler.reconcile,
            namespace_concurrency,
            logger=self.logger,
        )
        self.class_workers = WorkerPool(
            "class",
            self.class_queue,
            class_reconciler.reconcile,
            class_concurrency,
            logger=self.logger,
        )
        self.watchers: list[ResourceWatcher] = []
        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def add_watch(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        handler: EventHandler,
        convert: Callable[[Any], dict[str, Any]] = to_dict,
        **list_kwargs: Any,
    ) -> ResourceWatcher:
        watcher = ResourceWatcher(
            resource, list_fn, handler, list_kwargs=list_kwargs, convert=convert, logger=self.logger
        )
        self.watchers.append(watcher)
        return watcher

    def handle_namespace_event(self, event_type: str, namespace: dict[str, Any]) -> bool:
        """Enqueue a namespace that is, or was, attached to a class.

        Returns ``True`` when the namespace was enqueued.
        """
        if event_type == "DELETED":
            return False
        metadata = namespace.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            return False
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        if CLASS_LABEL not in labels and ATTACHED_CLASS_ANNOTATION not in annotations:
            return False
        self.namespace_queue.add(ReconcileRequest(name))
        return True

    def handle_class_event(
        self, event_type: str, class_obj: dict[str, Any]
    ) -> list[ReconcileRequest]:
        """Enqueue the class and every namespace attached to it.

        Returns the namespace requests produced by the fan-out.
        """
        name = (class_obj.get("metadata") or {}).get("name")
        if not name:
            return []
        if event_type != "DELETED":
            self.class_queue.add(ReconcileRequest(name))
        requests = requests_for_class(class_obj, self.store.list_namespaces)
        for request in requests:
            self.namespace_queue.add(request)
        return requests

    def request_stop(self) -> None:
        self._external_stop.set()
        for watcher in self.watchers:
            watcher.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start workers and watches, then block until shutdown.

        A watch loop that exits on its own (for example on an RBAC denial)
        stops the whole controller so the process does not keep reporting
        ready while blind to changes.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        self.namespace_workers.start()
        self.class_workers.start()
        threads = []
        for watcher in self.watchers:
            thread = threading.Thread(
                target=watcher.run_forever,
                kwargs={"shutdown_event": stop},
                name=f"watch-{watcher.resource}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)

        while not self._should_stop(stop):
            if not self.ready.is_set() and all(w.ready.is_set() for w in self.watchers):
                self.ready.set()
                self.logger.info("All watches synced; controller ready")
            if any(not thread.is_alive() for thread in threads):
                self.logger.error("A watch loop exited unexpectedly; stopping controller")
                break
            stop.wait(timeout=1.0)

        self.ready.clear()
        for watcher in self.watchers:
            watcher.request_stop()
        self.namespace_queue.shutdown()
        self.class_queue.shutdown()
        self.namespace_workers.join(timeout=30)
        self.class_workers.join(timeout=30)
        for thread in threads:
            thread.join(timeout=30)
        self.logger.info("Controller stopped")


def build_controller(store: KubeStore, config: ControllerConfig) -> NamespaceClassController:
    """Construct the controller and register the namespace and class watches."""
    controller = NamespaceClassController(
        store,
        NamespaceReconciler(store),
        ClassReconciler(store),
        namespace_concurrency=config.namespace_concurrency,
        class_concurrency=config.class_concurrency,
        retry_max_backoff_seconds=config.retry_max_backoff_seconds,
    )
    convert = store.as_dict
    controller.add_watch(
        "namespaces",
        store.core_api.list_namespace,
        controller.handle_namespace_event,
        convert=convert,
    )
    controller.add_watch(
        "namespaceclasses",
        store.custom_api.list_cluster_custom_object,
        controller.handle_class_event,
        convert=convert,
        group=CLASS_GROUP,
        version=CLASS_VERSION,
        plural=CLASS_PLURAL,
    )
    return controller
