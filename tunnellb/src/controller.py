from __future__ import annotations

import logging
import threading
import time
from collections.abc import Hashable
from typing import Any, Protocol

from kubernetes.client import CoreV1Api

from tunnellb.src.config import ControllerConfig
from tunnellb.src.informer import InvalidKeyError, meta_namespace_key, split_meta_namespace_key
from tunnellb.src.kube import (
    SERVICE_TYPE_LOAD_BALANCER,
    load_balancer_status,
    update_service_status,
)
from tunnellb.src.metrics import METRICS
from tunnellb.src.tracker import IngressRecord, IngressTracker
from tunnellb.src.workqueue import RateLimitingQueue

LOGGER = logging.getLogger(__name__)

CONTROLLER_NAME = "tunnellb-controller"
MAX_RETRIES = 12


class ServiceStore(Protocol):
    """Read side of the Service informer the controller depends on."""

    def get(self, key: str) -> Any | None: ...

    def has_synced(self) -> bool: ...

    def add_event_handler(self, on_add: Any, on_update: Any, on_delete: Any) -> None: ...


def compute_hostname(name: str, namespace: str, domain: str = "") -> str:
    """Return the public hostname assigned to a Service.

    The result only depends on *name* and *namespace*, so a Service keeps
    its hostname across controller restarts even if its status is lost.
    """
    # TODO: append ``domain`` once DNS routes are provisioned per hostname on the tunnel.
    return f"{name}-{namespace}"


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def service_address(service: Any) -> str | None:
    """Return ``clusterIP:port`` of the Service's first declared port.

    Multi-port Services are only reachable through their first port.
    Returns ``None`` when the Service declares no ports.
    """
    spec = getattr(service, "spec", None)
    ports = getattr(spec, "ports", None) or []
    if not ports:
        return None
    cluster_ip = getattr(spec, "cluster_ip", None) or ""
    return join_host_port(cluster_ip, int(ports[0].port))


def existing_hostname(service: Any) -> str | None:
    """Return the hostname already published in the Service's load balancer status."""
    status = getattr(service, "status", None)
    load_balancer = getattr(status, "load_balancer", None)
    for ingress in getattr(load_balancer, "ingress", None) or []:
        hostname = getattr(ingress, "hostname", None)
        if hostname:
            return hostname
    return None


def is_load_balancer(service: Any) -> bool:
    return getattr(getattr(service, "spec", None), "type", None) == SERVICE_TYPE_LOAD_BALANCER


class ServiceLoadBalancerController:
    """Assigns cloudflared tunnel hostnames to ``LoadBalancer`` Services.

    Informer callbacks only push ``namespace/name`` keys onto a
    rate-limited work queue.  Worker threads pop keys and run
    :meth:`sync_service`, which moves each Service between two states:

    Untracked
        No tracker entry.  Becomes Tracked once the Service is a
        ``LoadBalancer`` with a hostname, either adopted from its status
        (after a restart) or freshly assigned and written to status.
    Tracked
        Has a tracker entry.  Becomes Untracked when the Service is deleted
        or stops being a ``LoadBalancer``; in the latter case the published
        hostname is cleared from its status first.

    Any exception raised by a sync requeues the key with exponential
    backoff; after ``MAX_RETRIES`` the key is dropped until a new event
    adds it again.
    """

    def __init__(
        self,
        config: ControllerConfig,
        core_api: CoreV1Api,
        services: ServiceStore,
        tracker: IngressTracker | None = None,
        queue: RateLimitingQueue | None = None,
        worker_loop_period: float = 1.0,
        cache_sync_poll_seconds: float = 0.1,
    ) -> None:
        self.config = config
        self.core_api = core_api
        self.services = services
        self.tracker = tracker if tracker is not None else IngressTracker()
        self.queue = queue if queue is not None else RateLimitingQueue(name=CONTROLLER_NAME)
        self.worker_loop_period = worker_loop_period
        self.cache_sync_poll_seconds = cache_sync_poll_seconds
        self.ready = threading.Event()
        self.initial_sync = threading.Event()

        services.add_event_handler(
            on_add=self.on_service_add,
            on_update=self.on_service_update,
            on_delete=self.on_service_delete,
        )

    # handlers

    def on_service_add(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError:
            LOGGER.exception("Couldn't get key for added object")
            return
        LOGGER.debug("Adding service %s", key)
        self.queue.add(key)

    def on_service_update(self, old: Any, new: Any) -> None:
        """Queue the Service unless this is a resync or it is being deleted."""
        old_version = getattr(getattr(old, "metadata", None), "resource_version", None)
        new_metadata = getattr(new, "metadata", None)
        if old_version == getattr(new_metadata, "resource_version", None):
            return
        if getattr(new_metadata, "deletion_timestamp", None) is not None:
            return
        try:
            key = meta_namespace_key(new)
        except InvalidKeyError:
            return
        self.queue.add(key)

    def on_service_delete(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError:
            LOGGER.exception("Couldn't get key for deleted object")
            return
        LOGGER.debug("Deleting service %s", key)
        self.queue.add(key)

    # reconciliation

    def sync_service(self, key: str) -> None:
        start = time.monotonic()
        namespace, name = split_meta_namespace_key(key)
        LOGGER.info("Processing sync for service %s", key, extra={"service": key})
        try:
            self._sync_service(key, namespace, name)
        finally:
            elapsed = time.monotonic() - start
            METRICS.reconcile_duration_seconds.observe(elapsed)
            LOGGER.debug("Finished syncing service %s in %.3fs", key, elapsed)

    def _sync_service(self, key: str, namespace: str, name: str) -> None:
        service = self.services.get(key)
        address = service_address(service) if service is not None else None
        if service is not None and is_load_balancer(service) and address is None:
            LOGGER.warning(
                "Service %s is of type LoadBalancer but declares no ports; not exposing it",
                key,
                extra={"service": key},
            )

        if service is None or not is_load_balancer(service) or address is None:
            self._release(key, namespace, name, service)
            return

        hostname = existing_hostname(service)
        if hostname is not None:
            # Already assigned, typically by a previous controller run.
            LOGGER.info(
                "Adopting hostname %s for service %s",
                hostname,
                key,
                extra={"service": key, "hostname": hostname},
            )
            self.tracker.upsert(key, IngressRecord(hostname=hostname, service=address))
            return

        hostname = compute_hostname(name, namespace, self.config.domain)
        update_service_status(
            self.core_api,
            namespace=namespace,
            name=name,
            status=load_balancer_status(hostname),
        )
        LOGGER.info(
            "Assigned hostname %s to service %s",
            hostname,
            key,
            extra={"service": key, "hostname": hostname},
        )
        self.tracker.upsert(key, IngressRecord(hostname=hostname, service=address))

    def _release(self, key: str, namespace: str, name: str, service: Any | None) -> None:
        record = self.tracker.get(key)
        if record is None:
            return
        if service is not None:
            # Still exists but no longer qualifies; withdraw the published hostname.
            update_service_status(
                self.core_api,
                namespace=namespace,
                name=name,
                status=load_balancer_status(None),
            )
        LOGGER.info(
            "Released hostname %s of service %s",
            record.hostname,
            key,
            extra={"service": key, "hostname": record.hostname},
        )
        self.tracker.delete(key)

    def handle_err(self, err: Exception | None, key: Hashable) -> None:
        if err is None:
            METRICS.reconcile_total.labels(result="success").inc()
            self.queue.forget(key)
            return

        if isinstance(err, InvalidKeyError):
            METRICS.reconcile_total.labels(result="invalid_key").inc()
            LOGGER.error("Dropping malformed key %r: %s", key, err)
            self.queue.forget(key)
            return

        METRICS.reconcile_total.labels(result="error").inc()
        requeues = self.queue.num_requeues(key)
        if requeues < MAX_RETRIES:
            LOGGER.info(
                "Error syncing service %s, retrying (attempt %d): %s",
                key,
                requeues + 1,
                err,
                extra={"service": str(key)},
            )
            METRICS.retries_total.inc()
            self.queue.add_rate_limited(key)
            return

        LOGGER.error(
            "Dropping service %s out of the queue after %d retries: %s",
            key,
            requeues,
            err,
            extra={"service": str(key)},
        )
        METRICS.dropped_total.inc()
        self.queue.forget(key)

    # workers

    def process_next_work_item(self) -> bool:
        key, quit_ = self.queue.get()
        if quit_:
            return False
        try:
            err: Exception | None = None
            try:
                self.sync_service(str(key))
            except Exception as exc:
                err = exc
            self.handle_err(err, key)
        finally:
            self.queue.done(key)
        self._mark_initial_sync()
        return True

    def _mark_initial_sync(self) -> None:
        if self.initial_sync.is_set() or not self.ready.is_set() or not self.queue.is_idle():
            return
        LOGGER.info("Initial reconciliation of cached Services finished")
        self.initial_sync.set()

    def worker(self) -> None:
        while self.process_next_work_item():
            pass

    def _run_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and not self.queue.shutting_down():
            try:
                self.worker()
            except Exception:
                LOGGER.exception("Worker crashed; restarting in %.1fs", self.worker_loop_period)
            stop_event.wait(timeout=self.worker_loop_period)

    def wait_for_cache_sync(self, stop_event: threading.Event) -> bool:
        LOGGER.info("Waiting for informer caches to sync")
        while not self.services.has_synced():
            if stop_event.wait(timeout=self.cache_sync_poll_seconds):
                return False
        return True

    def run(self, workers: int, stop_event: threading.Event) -> bool:
        """Run ``workers`` reconcile threads until *stop_event* is set.

        Returns ``False`` without starting any worker if the stop event
        fires before the informer cache has synced.  On shutdown the queue
        stops handing out keys and the call waits for in-flight syncs.

        ``initial_sync`` is set the first time the queue drains after the
        workers start, i.e. once every Service from the initial list has
        been reconciled at least once.
        """
        LOGGER.info("Starting controller %s", CONTROLLER_NAME)
        threads: list[threading.Thread] = []
        try:
            if not self.wait_for_cache_sync(stop_event):
                LOGGER.error("Stopped before the Service cache synced")
                return False

            LOGGER.info("Starting %d worker(s)", workers)
            for index in range(workers):
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(stop_event,),
                    name=f"{CONTROLLER_NAME}-worker-{index}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
            self.ready.set()
            self._mark_initial_sync()

            stop_event.wait()
            return True
        finally:
            self.ready.clear()
            self.queue.shut_down()
            for thread in threads:
                thread.join()
            LOGGER.info(
                "Shutting down controller %s with %d key(s) queued and %d awaiting retry",
                CONTROLLER_NAME,
                len(self.queue),
                self.queue.waiting_count(),
            )
