"""Partition requested packages into direct installs and local builds."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from .console import Console
from .manifest import Manifest, ManifestEntry, ManifestList, PackageKind

DeferralPolicy = Callable[[ManifestEntry], bool]
"""Decides whether a package must be built locally instead of installed."""


def has_build_recipe(entry: ManifestEntry) -> bool:
    """Default conda policy: defer packages that carry a build recipe."""

    return entry.recipe is not None


def has_source_reference(entry: ManifestEntry) -> bool:
    """Default pip policy: defer packages that point at a source tree or repository."""

    return entry.recipe is not None or entry.is_source_reference


DEFAULT_POLICIES: Dict[PackageKind, DeferralPolicy] = {
    PackageKind.CONDA: has_build_recipe,
    PackageKind.PIP: has_source_reference,
}


@dataclass(frozen=True)
class Classification:
    kind: PackageKind
    direct: Tuple[ManifestEntry, ...]
    deferred: Tuple[ManifestEntry, ...]


class PackageClassifier:
    """Move direct entries whose policy says "build locally" into the deferred list.

    Entries already in a deferred list stay there: they were either requested
    as builds explicitly or classified earlier, so classifying twice gives the
    same partition. Classification never runs commands.
    """

    def __init__(
        self,
        policies: Dict[PackageKind, DeferralPolicy] | None = None,
        *,
        console: Console | None = None,
    ) -> None:
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._console = console

    def classify(self, manifest: Manifest, kind: PackageKind) -> Classification:
        policy = self._policies[kind]
        direct_list = ManifestList.select(kind, deferred=False)
        deferred_list = ManifestList.select(kind, deferred=True)

        for entry in manifest.entries(direct_list):
            if policy(entry):
                manifest.move(entry, deferred_list)
                if self._console:
                    self._console.info(f"Deferring {kind.value} package '{entry.name}' to a local build")

        return Classification(
            kind=kind,
            direct=manifest.entries(direct_list),
            deferred=manifest.entries(deferred_list),
        )


__all__ = [
    "Classification",
    "DEFAULT_POLICIES",
    "DeferralPolicy",
    "PackageClassifier",
    "has_build_recipe",
    "has_source_reference",
]
