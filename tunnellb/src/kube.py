from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def load_balancer_status(hostname: str | None) -> dict[str, Any]:
    """Build a Service ``status`` body publishing *hostname*, or clearing it when ``None``.

    A ``null`` ingress list removes the field under merge-patch semantics,
    which is how a released Service loses its tunnel hostname.
    """
    if hostname is None:
        return {"loadBalancer": {"ingress": None}}
    return {"loadBalancer": {"ingress": [{"hostname": hostname}]}}


def update_service_status(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> None:
    """Patch the ``status`` subresource of a Service.

    The write is last-write-wins and idempotent.  ``ApiException`` is left
    to the caller, which treats every failure as retryable.
    """
    core_api.patch_namespaced_service_status(
        name=name,
        namespace=namespace,
        body={"status": status},
    )
