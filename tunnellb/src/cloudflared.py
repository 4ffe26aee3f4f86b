from __future__ import annotations

import logging
import os
import random
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tunnellb.src.config import ControllerConfig
from tunnellb.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# https://developers.cloudflare.com/cloudflare-one/connections/connect-apps/configuration/local-management/configuration-file/
DEFAULT_FILENAME = "config.yaml"
# cloudflared rejects an ingress list whose last rule matches a hostname.
CATCH_ALL_SERVICE = "http_status:404"


@dataclass(frozen=True)
class IngressRule:
    hostname: str
    service: str


@dataclass
class TunnelConfiguration:
    """In-memory model of the cloudflared configuration file.

    Only the keys this controller manages are modelled: the tunnel
    identity, its credentials file and the ingress rules.  The file is
    always written in full, never merged with what is on disk.
    """

    path: str = DEFAULT_FILENAME
    tunnel_id: str = ""
    credentials_file: str = ""
    ingress: list[IngressRule] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: ControllerConfig) -> TunnelConfiguration:
        return cls(
            path=config.config_path,
            tunnel_id=config.tunnel_id,
            credentials_file=config.credentials_file,
        )

    @classmethod
    def from_file(cls, path: str) -> TunnelConfiguration:
        """Parse an existing configuration file.

        An empty file yields an empty configuration; malformed YAML raises
        :class:`yaml.YAMLError`.
        """
        with open(path, encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
        if raw is None:
            LOGGER.warning("Configuration file %s was empty", path)
            return cls(path=path)
        if not isinstance(raw, dict):
            raise yaml.YAMLError(f"configuration file {path} must contain a mapping")

        rules: list[IngressRule] = []
        for entry in raw.get("ingress") or []:
            if not isinstance(entry, dict):
                continue
            hostname = entry.get("hostname")
            service = entry.get("service")
            if not hostname or not service:
                continue
            rules.append(IngressRule(hostname=str(hostname), service=str(service)))

        return cls(
            path=path,
            tunnel_id=str(raw.get("tunnel") or ""),
            credentials_file=str(raw.get("credentials-file") or ""),
            ingress=rules,
        )

    def add_ingress(self, hostname: str, service: str) -> None:
        self.ingress.append(IngressRule(hostname=hostname, service=service))

    def to_dict(self) -> dict[str, Any]:
        document: dict[str, Any] = {}
        if self.tunnel_id:
            document["tunnel"] = self.tunnel_id
        if self.credentials_file:
            document["credentials-file"] = self.credentials_file
        rules: list[dict[str, str]] = [
            {"hostname": rule.hostname, "service": rule.service} for rule in self.ingress
        ]
        rules.append({"service": CATCH_ALL_SERVICE})
        document["ingress"] = rules
        return document

    def render(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def write(self) -> bool:
        """Atomically replace the configuration file if its content changed.

        The parent directory is created when missing.  The new content is
        written to a temporary file next to the target and renamed over it
        so cloudflared never reads a half-written file.  Returns ``True``
        when the file was replaced and ``False`` when it was already
        up to date.
        """
        if not self.path:
            raise ValueError("missing configuration file name")

        rendered = self.render().encode("utf-8")
        target = Path(self.path)
        target.parent.mkdir(parents=True, exist_ok=True)

        try:
            if target.read_bytes() == rendered:
                return False
        except FileNotFoundError:
            pass

        fd, temp_path = tempfile.mkstemp(prefix=".tunnellb-", suffix=".yaml", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(rendered)
            os.replace(temp_path, target)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise
        return True


class TunnelDaemon:
    """Supervise a local ``cloudflared`` process reading the managed config.

    ``run_forever`` starts the process, restarts it with capped exponential
    backoff whenever it exits on its own, and terminates it on shutdown.
    """

    def __init__(
        self,
        config_path: str,
        binary: str = "cloudflared",
        stop_timeout_seconds: float = 10.0,
        max_backoff_seconds: float = 30.0,
    ) -> None:
        self.config_path = config_path
        self.binary = binary
        self.stop_timeout_seconds = stop_timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._process: subprocess.Popen[bytes] | None = None

    def command(self) -> list[str]:
        return [self.binary, "tunnel", "--no-autoupdate", "--config", self.config_path, "run"]

    def start(self) -> subprocess.Popen[bytes]:
        cmd = self.command()
        LOGGER.info("Starting cloudflared: %s", " ".join(cmd))
        self._process = subprocess.Popen(cmd)  # noqa: S603
        return self._process

    def stop(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        LOGGER.info("Stopping cloudflared (pid %s)", process.pid)
        process.terminate()
        try:
            process.wait(timeout=self.stop_timeout_seconds)
        except subprocess.TimeoutExpired:
            LOGGER.warning(
                "cloudflared did not exit within %.1fs; killing it", self.stop_timeout_seconds
            )
            process.kill()
            process.wait()

    def run_forever(self, stop_event: threading.Event) -> None:
        backoff_seconds = min(1.0, self.max_backoff_seconds)
        first_start = True
        while not stop_event.is_set():
            try:
                if not first_start:
                    METRICS.daemon_restarts_total.inc()
                first_start = False
                process = self.start()
            except OSError:
                LOGGER.exception("Failed to launch %s", self.binary)
            else:
                while process.poll() is None and not stop_event.is_set():
                    stop_event.wait(timeout=1.0)
                if stop_event.is_set():
                    break
                LOGGER.error("cloudflared exited with code %s", process.returncode)

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, self.max_backoff_seconds)

        self.stop()
