from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

TRIGGER_ANNOTATION = "ingress/http"
OWNER_KIND = "Service"
OWNER_API_VERSION = "v1"


@dataclass(frozen=True)
class SourceSnapshot:
    """Read-only view of a Service as seen by the informer cache.

    Snapshots compare by value, so two snapshots of an unchanged Service
    (same ``resource_version``) are equal.
    """

    namespace: str
    name: str
    uid: str
    annotations: Mapping[str, str] = field(default_factory=dict)
    resource_version: str = ""

    @property
    def key(self) -> str:
        return meta_namespace_key(self.namespace, self.name)

    def __post_init__(self) -> None:
        object.__setattr__(self, "annotations", MappingProxyType(dict(self.annotations)))

    def __hash__(self) -> int:
        return hash(
            (
                self.namespace,
                self.name,
                self.uid,
                frozenset(self.annotations.items()),
                self.resource_version,
            )
        )


@dataclass(frozen=True)
class OwnerReference:
    """Non-owning back-link from a derived object to the object that created it."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False


@dataclass(frozen=True)
class DerivedSnapshot:
    """Read-only view of an Ingress as seen by the informer cache."""

    namespace: str
    name: str
    owner_references: tuple[OwnerReference, ...] = ()
    resource_version: str = ""

    @property
    def key(self) -> str:
        return meta_namespace_key(self.namespace, self.name)


def meta_namespace_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` key for an object (just ``name`` when cluster-scoped)."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key into its parts.

    Raises ``ValueError`` for keys with more than one separator or an empty name.
    """
    parts = key.split("/")
    if len(parts) == 1:
        namespace, name = "", parts[0]
    elif len(parts) == 2:
        namespace, name = parts
    else:
        raise ValueError(f"unexpected key format: {key!r}")
    if not name:
        raise ValueError(f"unexpected key format: {key!r}")
    return namespace, name


def controller_of(derived: DerivedSnapshot) -> OwnerReference | None:
    """Return the owner reference flagged as the managing controller, if any."""
    for reference in derived.owner_references:
        if reference.controller:
            return reference
    return None


def is_owned_by_service(derived: DerivedSnapshot) -> bool:
    reference = controller_of(derived)
    return reference is not None and reference.kind == OWNER_KIND


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def source_snapshot_from_service(service: Any) -> SourceSnapshot:
    """Build a :class:`SourceSnapshot` from a ``V1Service`` (or any look-alike)."""
    metadata = getattr(service, "metadata", None)
    return SourceSnapshot(
        namespace=getattr(metadata, "namespace", None) or "",
        name=getattr(metadata, "name", None) or "",
        uid=getattr(metadata, "uid", None) or "",
        annotations=_string_map(getattr(metadata, "annotations", None)),
        resource_version=getattr(metadata, "resource_version", None) or "",
    )


def derived_snapshot_from_ingress(ingress: Any) -> DerivedSnapshot:
    """Build a :class:`DerivedSnapshot` from a ``V1Ingress`` (or any look-alike)."""
    metadata = getattr(ingress, "metadata", None)
    references = tuple(
        OwnerReference(
            api_version=getattr(ref, "api_version", None) or "",
            kind=getattr(ref, "kind", None) or "",
            name=getattr(ref, "name", None) or "",
            uid=getattr(ref, "uid", None) or "",
            controller=bool(getattr(ref, "controller", False)),
        )
        for ref in (getattr(metadata, "owner_references", None) or [])
    )
    return DerivedSnapshot(
        namespace=getattr(metadata, "namespace", None) or "",
        name=getattr(metadata, "name", None) or "",
        owner_references=references,
        resource_version=getattr(metadata, "resource_version", None) or "",
    )
