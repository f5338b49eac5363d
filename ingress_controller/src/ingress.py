from __future__ import annotations

from kubernetes.client import (
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1OwnerReference,
    V1ServiceBackendPort,
)

from ingress_controller.src.resources import OWNER_API_VERSION, OWNER_KIND, SourceSnapshot

INGRESS_CLASS_NAME = "nginx"
INGRESS_HOST = "example.com"
INGRESS_PATH = "/"
INGRESS_PATH_TYPE = "Prefix"
BACKEND_PORT = 80


def build_owner_reference(service: SourceSnapshot) -> V1OwnerReference:
    """Return the controller reference tying an Ingress to *service*.

    ``block_owner_deletion`` lets foreground deletion of the Service wait for
    the garbage collector to remove the Ingress first.
    """
    return V1OwnerReference(
        api_version=OWNER_API_VERSION,
        kind=OWNER_KIND,
        name=service.name,
        uid=service.uid,
        controller=True,
        block_owner_deletion=True,
    )


def build_ingress(service: SourceSnapshot) -> V1Ingress:
    """Return the desired Ingress for an annotated Service.

    The result depends only on the snapshot's namespace, name and uid; host,
    class and port are fixed.
    """
    backend = V1IngressBackend(
        service=V1IngressServiceBackend(
            name=service.name,
            port=V1ServiceBackendPort(number=BACKEND_PORT),
        )
    )
    rule = V1IngressRule(
        host=INGRESS_HOST,
        http=V1HTTPIngressRuleValue(
            paths=[
                V1HTTPIngressPath(
                    path=INGRESS_PATH,
                    path_type=INGRESS_PATH_TYPE,
                    backend=backend,
                )
            ]
        ),
    )
    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=V1ObjectMeta(
            name=service.name,
            namespace=service.namespace,
            owner_references=[build_owner_reference(service)],
        ),
        spec=V1IngressSpec(
            ingress_class_name=INGRESS_CLASS_NAME,
            rules=[rule],
        ),
    )
