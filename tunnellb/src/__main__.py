from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Callable

from tunnellb.src.cloudflared import TunnelDaemon
from tunnellb.src.config import ControllerConfig, load_config
from tunnellb.src.controller import ServiceLoadBalancerController
from tunnellb.src.health import start_health_server
from tunnellb.src.informer import ServiceInformer
from tunnellb.src.kube import build_core_client, load_kube_configuration
from tunnellb.src.metrics import METRICS
from tunnellb.src.sync import ConfigSyncer
from tunnellb.src.tracker import IngressTracker

RUNTIME_VERSION = "0.1.0"
CONTEXT_FIELDS = ("service", "hostname")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|api[_-]?key|tunnelsecret)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects, carrying ``service``/``hostname`` extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _start_thread(
    name: str,
    target: Callable[[threading.Event], None],
    shutdown_event: threading.Event,
) -> threading.Thread:
    """Run *target* in a daemon thread; its unexpected exit stops the whole process."""

    def _run() -> None:
        try:
            target(shutdown_event)
        except Exception:
            logging.getLogger(__name__).exception("%s thread crashed", name)
        finally:
            if not shutdown_event.is_set():
                logging.getLogger(__name__).error(
                    "%s thread exited without a stop signal; shutting down", name
                )
                shutdown_event.set()

    thread = threading.Thread(target=_run, name=name, daemon=True)
    thread.start()
    return thread


def run(config: ControllerConfig, shutdown_event: threading.Event) -> None:
    """Wire informer, controller, config sync and cloudflared, and block until shutdown."""
    logger = logging.getLogger(__name__)
    if config.domain:
        logger.warning(
            "TUNNEL_DOMAIN=%s is accepted but not yet applied to assigned hostnames",
            config.domain,
        )

    load_kube_configuration()
    core_api = build_core_client()

    informer = ServiceInformer(core_api=core_api, namespace=config.namespace)
    tracker = IngressTracker()
    controller = ServiceLoadBalancerController(
        config=config,
        core_api=core_api,
        services=informer,
        tracker=tracker,
    )
    syncer = ConfigSyncer(tracker=tracker, config=config, ready=controller.initial_sync)
    tracker.set_on_change(syncer.notify)

    health_server = start_health_server(
        ready=controller.ready,
        synced=informer.has_synced,
        port=config.health_port,
    )

    syncer.write_if_missing()

    threads = [
        _start_thread("service-informer", informer.run_forever, shutdown_event),
        _start_thread("config-sync", syncer.run_forever, shutdown_event),
    ]
    if config.daemon_enabled and not config.tunnel_id:
        logger.warning("CLOUDFLARED_ENABLED is set but TUNNEL_ID is empty; not starting cloudflared")
    elif config.daemon_enabled:
        daemon = TunnelDaemon(config_path=config.config_path, binary=config.daemon_binary)
        threads.append(_start_thread("cloudflared", daemon.run_forever, shutdown_event))

    try:
        controller.run(config.workers, shutdown_event)
    finally:
        shutdown_event.set()
        informer.request_stop()
        # Workers are joined by now, so the final sync sees their last changes.
        syncer.stop()
        for thread in threads:
            thread.join(timeout=15)
        health_server.shutdown()


def main() -> None:
    """Controller entrypoint: configure logging, load config, and run until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    run(config, shutdown_event)
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
