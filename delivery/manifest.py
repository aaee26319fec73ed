"""Package manifests: the four ordered package lists of a delivery."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Tuple
import re


class PackageKind(str, Enum):
    CONDA = "conda"
    PIP = "pip"


class ManifestList(str, Enum):
    CONDA_DIRECT = "conda_packages"
    CONDA_DEFERRED = "conda_packages_defer"
    PIP_DIRECT = "pip_packages"
    PIP_DEFERRED = "pip_packages_defer"

    @property
    def kind(self) -> PackageKind:
        if self in (ManifestList.CONDA_DIRECT, ManifestList.CONDA_DEFERRED):
            return PackageKind.CONDA
        return PackageKind.PIP

    @property
    def deferred(self) -> bool:
        return self in (ManifestList.CONDA_DEFERRED, ManifestList.PIP_DEFERRED)

    @classmethod
    def select(cls, kind: PackageKind, *, deferred: bool) -> "ManifestList":
        if kind is PackageKind.CONDA:
            return cls.CONDA_DEFERRED if deferred else cls.CONDA_DIRECT
        return cls.PIP_DEFERRED if deferred else cls.PIP_DIRECT


_NAME_PATTERN = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")
_SOURCE_PREFIXES = ("git+", "hg+", "svn+", "bzr+", "http://", "https://", "file:", "./", "../", "/")


@dataclass(frozen=True)
class ManifestEntry:
    """One requested package and, when it must be built, its recipe reference."""

    spec: str
    kind: PackageKind
    recipe: str | None = None

    def __post_init__(self) -> None:
        if not self.spec or not self.spec.strip():
            raise ValueError("Package spec cannot be empty")

    @property
    def is_source_reference(self) -> bool:
        text = self.spec.strip()
        if " @ " in text:
            return True
        return text.startswith(_SOURCE_PREFIXES)

    @property
    def name(self) -> str:
        text = self.spec.strip()
        if " @ " in text:
            text = text.split(" @ ", 1)[0]
        elif text.startswith(_SOURCE_PREFIXES):
            tail = text.split("#egg=", 1)[1] if "#egg=" in text else text.rstrip("/").rsplit("/", 1)[-1]
            tail = tail.split("@", 1)[0]
            return tail[:-4] if tail.endswith(".git") else tail
        # Channel-qualified conda specs: `conda-forge::numpy=1.2`.
        text = text.rpartition("::")[2]
        match = _NAME_PATTERN.match(text)
        return match.group(1) if match else text

    def with_recipe(self, recipe: str | None) -> "ManifestEntry":
        return ManifestEntry(spec=self.spec, kind=self.kind, recipe=recipe)


class Manifest:
    """The four package lists of a delivery.

    An entry belongs to exactly one list at a time; :meth:`move` transfers it
    and :meth:`add` refuses duplicates across lists.
    """

    def __init__(self) -> None:
        self._lists: Dict[ManifestList, List[ManifestEntry]] = {name: [] for name in ManifestList}

    @classmethod
    def from_specs(
        cls,
        *,
        conda_packages: Iterable[str] = (),
        conda_packages_defer: Iterable[str] = (),
        pip_packages: Iterable[str] = (),
        pip_packages_defer: Iterable[str] = (),
        recipes: Dict[str, str] | None = None,
        sources: Dict[str, str] | None = None,
    ) -> "Manifest":
        """Build a manifest, attaching recipe (conda) or source (pip) references by package name."""

        recipes = recipes or {}
        sources = sources or {}
        manifest = cls()
        groups: Tuple[Tuple[ManifestList, Iterable[str]], ...] = (
            (ManifestList.CONDA_DIRECT, conda_packages),
            (ManifestList.CONDA_DEFERRED, conda_packages_defer),
            (ManifestList.PIP_DIRECT, pip_packages),
            (ManifestList.PIP_DEFERRED, pip_packages_defer),
        )
        for target, specs in groups:
            references = recipes if target.kind is PackageKind.CONDA else sources
            for spec in specs:
                entry = ManifestEntry(spec=spec, kind=target.kind)
                manifest.add(target, entry.with_recipe(references.get(entry.name)))
        return manifest

    def add(self, target: ManifestList, entry: ManifestEntry) -> None:
        if entry.kind is not target.kind:
            raise ValueError(f"Cannot add {entry.kind.value} package '{entry.spec}' to {target.value}")
        current = self.locate(entry)
        if current is not None:
            raise ValueError(f"Package '{entry.spec}' is already listed in {current.value}")
        self._lists[target].append(entry)

    def locate(self, entry: ManifestEntry) -> ManifestList | None:
        for name, entries in self._lists.items():
            if any(existing.spec == entry.spec and existing.kind is entry.kind for existing in entries):
                return name
        return None

    def move(self, entry: ManifestEntry, target: ManifestList) -> None:
        current = self.locate(entry)
        if current is None:
            raise KeyError(f"Package '{entry.spec}' is not part of this manifest")
        if current is target:
            return
        if entry.kind is not target.kind:
            raise ValueError(f"Cannot move {entry.kind.value} package '{entry.spec}' to {target.value}")
        source = self._lists[current]
        index = next(i for i, existing in enumerate(source) if existing.spec == entry.spec)
        self._lists[target].append(source.pop(index))

    def entries(self, name: ManifestList) -> Tuple[ManifestEntry, ...]:
        return tuple(self._lists[name])

    def specs(self, name: ManifestList) -> List[str]:
        return [entry.spec for entry in self._lists[name]]

    def __iter__(self) -> Iterator[Tuple[ManifestList, ManifestEntry]]:
        for name, entries in self._lists.items():
            for entry in entries:
                yield name, entry

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._lists.values())
