from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from tunnellb.src.kube import (
    build_core_client,
    load_balancer_status,
    load_kube_configuration,
    update_service_status,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("tunnellb.src.kube.config.load_incluster_config") as mock_incluster,
        patch("tunnellb.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "tunnellb.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("tunnellb.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_client() -> None:
    with patch("tunnellb.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_client()

    assert core.name == "core"


def test_load_balancer_status_publishes_hostname() -> None:
    assert load_balancer_status("web-default") == {
        "loadBalancer": {"ingress": [{"hostname": "web-default"}]}
    }


def test_load_balancer_status_clears_ingress() -> None:
    assert load_balancer_status(None) == {"loadBalancer": {"ingress": None}}


def test_update_service_status_patches_status_subresource() -> None:
    core_api = MagicMock()

    update_service_status(
        core_api,
        namespace="default",
        name="web",
        status=load_balancer_status("web-default"),
    )

    core_api.patch_namespaced_service_status.assert_called_once_with(
        name="web",
        namespace="default",
        body={"status": {"loadBalancer": {"ingress": [{"hostname": "web-default"}]}}},
    )


def test_update_service_status_propagates_api_errors() -> None:
    core_api = MagicMock()
    core_api.patch_namespaced_service_status.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ApiException):
        update_service_status(core_api, "default", "web", load_balancer_status(None))
