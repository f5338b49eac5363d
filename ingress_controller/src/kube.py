from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api, V1Ingress
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


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


def build_clients() -> tuple[CoreV1Api, NetworkingV1Api]:
    """Return CoreV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.NetworkingV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def create_ingress(networking_api: NetworkingV1Api, namespace: str, body: V1Ingress) -> None:
    """Create *body* in *namespace*; any ``ApiException`` propagates to the caller."""
    networking_api.create_namespaced_ingress(namespace=namespace, body=body)


def delete_ingress(networking_api: NetworkingV1Api, namespace: str, name: str) -> bool:
    """Delete an Ingress by name.

    Returns ``False`` when the Ingress was already gone (404), so callers can
    treat a lost deletion race as success.  Other errors propagate.
    """
    try:
        networking_api.delete_namespaced_ingress(name=name, namespace=namespace)
    except ApiException as exc:
        if is_not_found(exc):
            LOGGER.info("Ingress %s/%s already deleted", namespace, name)
            return False
        raise
    return True
