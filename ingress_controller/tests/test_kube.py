from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from ingress_controller.src.kube import (
    build_clients,
    create_ingress,
    delete_ingress,
    is_not_found,
    load_kube_configuration,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("ingress_controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("ingress_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "ingress_controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("ingress_controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("ingress_controller.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.NetworkingV1Api.return_value = SimpleNamespace(name="networking")
        core, networking = build_clients()

    assert core.name == "core"
    assert networking.name == "networking"


def test_is_not_found() -> None:
    assert is_not_found(ApiException(status=404, reason="Not Found")) is True
    assert is_not_found(ApiException(status=500, reason="boom")) is False
    assert is_not_found(RuntimeError("404")) is False


def test_create_ingress_sends_body_to_namespace() -> None:
    api = MagicMock()
    body = SimpleNamespace(name="foo")

    create_ingress(api, "default", body)  # type: ignore[arg-type]

    api.create_namespaced_ingress.assert_called_once_with(namespace="default", body=body)


def test_delete_ingress_returns_true_on_success() -> None:
    api = MagicMock()

    assert delete_ingress(api, "default", "foo") is True
    api.delete_namespaced_ingress.assert_called_once_with(name="foo", namespace="default")


def test_delete_ingress_tolerates_not_found() -> None:
    api = MagicMock()
    api.delete_namespaced_ingress.side_effect = ApiException(status=404, reason="Not Found")

    assert delete_ingress(api, "default", "foo") is False


def test_delete_ingress_propagates_other_errors() -> None:
    api = MagicMock()
    api.delete_namespaced_ingress.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ApiException):
        delete_ingress(api, "default", "foo")
