from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        domain:              Hostname suffix for the tunnel.  Accepted but not
                             yet applied to assigned hostnames.
        tunnel_id:           cloudflared tunnel name or UUID.  Required for the
                             supervised daemon to start.
        credentials_file:    Path to the tunnel credentials JSON.
        config_path:         Where the cloudflared YAML configuration is written.
        daemon_enabled:      Whether this process supervises ``cloudflared``.
        daemon_binary:       Executable used to start ``cloudflared``.
        namespace:           Namespace to watch; empty watches all namespaces.
        workers:             Number of concurrent reconcile workers.
        sync_period_seconds: Upper bound between two config file syncs.
        health_port:         Port of the health/metrics HTTP server.
    """

    domain: str = ""
    tunnel_id: str = ""
    credentials_file: str = ""
    config_path: str = "config.yaml"
    daemon_enabled: bool = True
    daemon_binary: str = "cloudflared"
    namespace: str = ""
    workers: int = 1
    sync_period_seconds: int = 10
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Recognised variables: ``TUNNEL_DOMAIN``, ``TUNNEL_ID``,
    ``TUNNEL_CREDENTIALS_FILE``, ``CLOUDFLARED_CONFIG_PATH``,
    ``CLOUDFLARED_ENABLED``, ``CLOUDFLARED_BINARY``, ``WATCH_NAMESPACE``,
    ``WORKERS``, ``CONFIG_SYNC_PERIOD_SECONDS`` and ``HEALTH_PORT``.

    Raises :class:`ConfigError` for malformed values or a credentials file
    given without the tunnel it belongs to.
    """
    values = env if env is not None else os.environ

    tunnel_id = values.get("TUNNEL_ID", "").strip()
    credentials_file = values.get("TUNNEL_CREDENTIALS_FILE", "").strip()
    if credentials_file and not tunnel_id:
        raise ConfigError("TUNNEL_CREDENTIALS_FILE requires TUNNEL_ID to be set")

    config_path = values.get("CLOUDFLARED_CONFIG_PATH", "config.yaml").strip()
    if not config_path:
        raise ConfigError("CLOUDFLARED_CONFIG_PATH must be a non-empty path")

    daemon_binary = values.get("CLOUDFLARED_BINARY", "cloudflared").strip()
    if not daemon_binary:
        raise ConfigError("CLOUDFLARED_BINARY must be a non-empty string")

    return ControllerConfig(
        domain=values.get("TUNNEL_DOMAIN", "").strip(),
        tunnel_id=tunnel_id,
        credentials_file=credentials_file,
        config_path=config_path,
        daemon_enabled=parse_bool(values.get("CLOUDFLARED_ENABLED"), default=True),
        daemon_binary=daemon_binary,
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        workers=env_int("WORKERS", 1, minimum=1, env=values),
        sync_period_seconds=env_int("CONFIG_SYNC_PERIOD_SECONDS", 10, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
