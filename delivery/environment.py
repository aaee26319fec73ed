"""Environment store and host system description."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, MutableMapping, Tuple
import os
import platform


class EnvironmentStore(MutableMapping[str, str]):
    """Ordered ``name -> value`` view of the environment commands inherit.

    Keys are unique and later writes overwrite earlier ones, matching shell
    variable semantics. Commands receive :meth:`snapshot` copies, so a write
    after spawn never reaches a running child.
    """

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._data: Dict[str, str] = {}
        if initial:
            for key, value in initial.items():
                self._data[str(key)] = str(value)

    @classmethod
    def from_os(cls) -> "EnvironmentStore":
        return cls(os.environ)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        if not isinstance(key, str) or not key:
            raise KeyError("Environment variable names must be non-empty strings")
        if not isinstance(value, str):
            raise TypeError(f"Environment value for '{key}' must be a string")
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"EnvironmentStore({len(self._data)} variables)"

    def update_from(self, records: Iterable[Tuple[str, str]]) -> int:
        """Apply ``(key, value)`` pairs in order and return how many were written."""

        count = 0
        for key, value in records:
            self[key] = value
            count += 1
        return count

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


_CONDA_SUBDIRS: Dict[Tuple[str, str], str] = {
    ("linux", "x86_64"): "linux-64",
    ("linux", "aarch64"): "linux-aarch64",
    ("linux", "ppc64le"): "linux-ppc64le",
    ("darwin", "x86_64"): "osx-64",
    ("darwin", "arm64"): "osx-arm64",
}

_INSTALLER_PLATFORMS = {"linux": "Linux", "darwin": "MacOSX"}
_RELEASE_PLATFORMS = {"linux": "linux", "darwin": "macos"}


@dataclass(slots=True)
class SystemInfo:
    arch: str
    platform: str
    conda_subdir: str
    conda_installer_platform: str
    release_platform: str

    @classmethod
    def detect(cls, *, os_name: str | None = None, machine: str | None = None) -> "SystemInfo":
        os_name = (os_name or platform.system()).lower()
        machine = machine or platform.machine()
        if machine == "amd64":
            machine = "x86_64"
        if os_name == "darwin" and machine == "aarch64":
            machine = "arm64"
        if os_name not in _INSTALLER_PLATFORMS:
            raise ValueError(f"Unsupported platform for conda deliveries: {os_name}")
        subdir = _CONDA_SUBDIRS.get((os_name, machine))
        if subdir is None:
            raise ValueError(f"Unsupported architecture '{machine}' on {os_name}")
        return cls(
            arch=machine,
            platform=os_name,
            conda_subdir=subdir,
            conda_installer_platform=_INSTALLER_PLATFORMS[os_name],
            release_platform=_RELEASE_PLATFORMS[os_name],
        )

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "arch": self.arch,
            "platform": self.platform,
            "conda_subdir": self.conda_subdir,
            "installer_platform": self.conda_installer_platform,
            "release_platform": self.release_platform,
        }
