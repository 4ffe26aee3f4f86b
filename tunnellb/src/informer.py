from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from tunnellb.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class InvalidKeyError(ValueError):
    """Raised for a queue key that is not ``name`` or ``namespace/name``."""


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for a namespaced object, ``name`` otherwise."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise InvalidKeyError(f"object has no metadata.name: {obj!r}")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key produced by :func:`meta_namespace_key` into ``(namespace, name)``."""
    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    if not name:
        raise InvalidKeyError(f"unexpected key format: {key!r}")
    return namespace, name


@dataclass(frozen=True)
class EventHandler:
    on_add: Callable[[Any], None]
    on_update: Callable[[Any, Any], None]
    on_delete: Callable[[Any], None]


class ServiceInformer:
    """List-then-watch cache of Services with add/update/delete callbacks.

    The store is keyed by :func:`meta_namespace_key` and always holds the
    latest object seen on the watch.  Handlers run on the watch thread, so
    they must only translate events (e.g. enqueue a key) and return.

    ``synced`` is set after the first successful list; consumers must not
    read the store before that.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str = "",
        watch_timeout_seconds: int = 300,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.synced = threading.Event()
        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None],
        on_update: Callable[[Any, Any], None],
        on_delete: Callable[[Any], None],
    ) -> None:
        self._handlers.append(EventHandler(on_add=on_add, on_update=on_update, on_delete=on_delete))

    def has_synced(self) -> bool:
        return self.synced.is_set()

    def get(self, key: str) -> Any | None:
        with self._store_lock:
            return self._store.get(key)

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace:
            return self.core_api.list_namespaced_service
        return self.core_api.list_service_for_all_namespaces

    def _list_kwargs(self) -> dict[str, Any]:
        if self.namespace:
            return {"namespace": self.namespace}
        return {}

    def _dispatch_add(self, obj: Any) -> None:
        for handler in self._handlers:
            handler.on_add(obj)

    def _dispatch_update(self, old: Any, new: Any) -> None:
        for handler in self._handlers:
            handler.on_update(old, new)

    def _dispatch_delete(self, obj: Any) -> None:
        for handler in self._handlers:
            handler.on_delete(obj)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError:
            LOGGER.warning("Ignoring %s event for object without a name", event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                old = self._store.get(key)
                self._store[key] = obj
            if old is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(old, obj)
        elif event_type == "DELETED":
            with self._store_lock:
                old = self._store.pop(key, None)
            self._dispatch_delete(old if old is not None else obj)

    def replace(self, items: list[Any]) -> None:
        """Swap the whole store for a fresh listing, emitting the difference as events.

        Objects that vanished while the watch was down are reported as
        deletes with their last known state.
        """
        fresh: dict[str, Any] = {}
        for obj in items:
            try:
                fresh[meta_namespace_key(obj)] = obj
            except InvalidKeyError:
                continue

        with self._store_lock:
            previous = self._store
            self._store = fresh

        for key, obj in previous.items():
            if key not in fresh:
                self._dispatch_delete(obj)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(old, obj)

    def _relist(self) -> str | None:
        listing = self._list_func()(**self._list_kwargs())
        self.replace(list(getattr(listing, "items", None) or []))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch Services until shutdown.

        The initial list is retried with jittered exponential backoff
        (1 s doubling to 30 s).  A ``410 Gone`` from the watch means the
        resourceVersion was compacted away, so the store is rebuilt from a
        fresh list.  ``401``/``403`` are configuration errors and end the
        loop instead of retrying forever.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.synced.set()
                LOGGER.info("Service cache synced at resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API access denied during initial Service list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                LOGGER.exception("Initial Service list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                LOGGER.exception("Unexpected error during initial Service list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if resource_version is None:
                    resource_version = self._relist()
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func(),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("Watch resource version expired, re-listing Services")
                    resource_version = None
                    continue
                if exc.status in {401, 403}:
                    LOGGER.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return
                LOGGER.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                LOGGER.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
