from __future__ import annotations

import logging
import os
import threading

import yaml

from tunnellb.src.cloudflared import TunnelConfiguration
from tunnellb.src.config import ControllerConfig
from tunnellb.src.metrics import METRICS
from tunnellb.src.tracker import IngressTracker

LOGGER = logging.getLogger(__name__)


class ConfigSyncer:
    """Keeps the cloudflared configuration file in line with the tracker.

    Syncs happen when a tracker mutation calls :meth:`notify`, and at least
    every ``sync_period_seconds`` otherwise, so a failed write is retried
    by the next pass without any bookkeeping.  Write failures never leave
    this class; they are logged and counted.

    When *ready* is given, nothing is written until it is set.  The tracker
    starts empty after a restart, and an early write would drop every route
    the previous run published.
    """

    def __init__(
        self,
        tracker: IngressTracker,
        config: ControllerConfig,
        sync_period_seconds: float | None = None,
        ready: threading.Event | None = None,
        ready_poll_seconds: float = 0.1,
    ) -> None:
        self.tracker = tracker
        self.config = config
        self.sync_period_seconds = (
            sync_period_seconds if sync_period_seconds is not None else config.sync_period_seconds
        )
        self.ready = ready
        self.ready_poll_seconds = ready_poll_seconds
        self._wake = threading.Event()
        self._stopped = threading.Event()

    def notify(self) -> None:
        self._wake.set()

    def render(self) -> TunnelConfiguration:
        configuration = TunnelConfiguration.from_config(self.config)
        for record in self.tracker.snapshot():
            configuration.add_ingress(record.hostname, record.service)
        return configuration

    def sync_once(self) -> bool:
        """Write the current tracker snapshot; return whether the file changed."""
        configuration = self.render()
        try:
            changed = configuration.write()
        except (OSError, ValueError, yaml.YAMLError):
            LOGGER.exception("Failed to write cloudflared configuration %s", configuration.path)
            METRICS.config_write_errors_total.inc()
            return False

        if changed:
            METRICS.config_writes_total.inc()
            LOGGER.info(
                "Wrote cloudflared configuration %s with %d ingress rule(s)",
                configuration.path,
                len(configuration.ingress),
            )
        return changed

    def write_if_missing(self) -> bool:
        """Create the configuration file when none exists yet.

        cloudflared refuses to start without one.  An existing file is left
        alone so the routes it holds keep serving until the first real sync.
        """
        if os.path.exists(self.config.config_path):
            LOGGER.info("Keeping existing cloudflared configuration %s", self.config.config_path)
            return False
        return self.sync_once()

    def _wait_until_ready(self) -> bool:
        if self.ready is None:
            return True
        LOGGER.info("Waiting for initial reconciliation before syncing %s", self.config.config_path)
        while not self.ready.wait(timeout=self.ready_poll_seconds):
            if self._stopped.is_set():
                return False
        return True

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """Sync until :meth:`stop` is called, then sync one last time.

        *stop_event* is not observed: workers may still change the tracker
        after the process starts shutting down, and the final sync has to
        see those changes.  Call :meth:`stop` once the workers are joined.
        """
        if not self._wait_until_ready():
            LOGGER.info("Stopped before initial reconciliation; configuration left untouched")
            return
        while not self._stopped.is_set():
            self._wake.clear()
            self.sync_once()
            if self._stopped.is_set():
                break
            self._wake.wait(timeout=self.sync_period_seconds)
        self.sync_once()

    def stop(self) -> None:
        self._stopped.set()
        self._wake.set()
