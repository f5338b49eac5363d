from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

from ingress_controller.src.resources import DerivedSnapshot, SourceSnapshot


@dataclass(frozen=True)
class SourceAdded:
    source: SourceSnapshot


@dataclass(frozen=True)
class SourceUpdated:
    old: SourceSnapshot
    new: SourceSnapshot


@dataclass(frozen=True)
class DerivedDeleted:
    derived: DerivedSnapshot


# Every notification the controller reacts to.  Other informer callbacks
# (Service deletes, Ingress adds/updates) are never wired up.
Event: TypeAlias = SourceAdded | SourceUpdated | DerivedDeleted
