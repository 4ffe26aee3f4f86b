from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from tunnellb.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngressRecord:
    """One cloudflared ingress rule owned by a Service.

    ``hostname`` is the public name published through the tunnel and
    ``service`` is the in-cluster address (``host:port``) it forwards to.
    """

    hostname: str
    service: str


class IngressTracker:
    """Thread-safe map of Service key to its assigned :class:`IngressRecord`.

    A single lock guards the map; it is only held for the dictionary
    operation itself so callers never block on Kubernetes API calls made
    by other workers.  Records are immutable, which lets ``snapshot`` hand
    them out without copying each one.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, IngressRecord] = {}
        self._on_change = on_change

    def set_on_change(self, on_change: Callable[[], None] | None) -> None:
        self._on_change = on_change

    def _changed(self) -> None:
        METRICS.tracked_services.set(len(self))
        if self._on_change is not None:
            self._on_change()

    def upsert(self, key: str, record: IngressRecord) -> None:
        with self._lock:
            previous = self._records.get(key)
            self._records[key] = record
        if previous != record:
            LOGGER.debug("Tracking %s as %s -> %s", key, record.hostname, record.service)
            self._changed()

    def get(self, key: str) -> IngressRecord | None:
        with self._lock:
            return self._records.get(key)

    def delete(self, key: str) -> IngressRecord | None:
        with self._lock:
            removed = self._records.pop(key, None)
        if removed is not None:
            self._changed()
        return removed

    def snapshot(self) -> list[IngressRecord]:
        """Return the current records ordered by hostname."""
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: (r.hostname, r.service))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
