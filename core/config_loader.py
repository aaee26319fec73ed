"""Shared helpers for locating and loading configuration mappings."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, TextIO

import configparser
import json
import tomllib

import yaml


ConfigLoader = Callable[[Any], Mapping[str, Any]]

INI_SECTION_SEPARATOR = ":"


def _load_ini(stream: TextIO) -> Mapping[str, Any]:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    parser.read_file(stream)

    data: Dict[str, Any] = {}
    for section in parser.sections():
        values: Dict[str, Any] = {}
        for key, raw in parser.items(section):
            text = raw.strip()
            if "\n" in text:
                values[key] = [line.strip() for line in text.splitlines() if line.strip()]
            else:
                values[key] = text
        if INI_SECTION_SEPARATOR in section:
            group, _, name = section.partition(INI_SECTION_SEPARATOR)
            data.setdefault(group.strip(), {})[name.strip()] = values
        else:
            data[section] = values
    return data


FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
    ".ini": _load_ini,
}
"""Mapping of file suffixes to loader callables."""


def register_loader(suffix: str, loader: ConfigLoader) -> None:
    """Register ``loader`` for files ending with ``suffix``."""

    normalized = suffix.lower()
    if not normalized.startswith("."):
        raise ValueError("Suffix must start with '.'")
    FILE_LOADERS[normalized] = loader


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Load and decode a configuration mapping from ``path``."""

    suffix = path.suffix.lower()
    loader = FILE_LOADERS.get(suffix)
    if loader is None:
        supported = ", ".join(sorted(FILE_LOADERS)) or "<none>"
        raise ValueError(
            f"Unsupported configuration file extension: {suffix}. Supported: {supported}"
        )

    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"

    with path.open(mode, **kwargs) as handle:
        data = loader(handle)

    if not isinstance(data, Mapping):
        raise TypeError(f"Configuration file '{path}' must contain a mapping at the root")

    return data


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Coerce ``value`` into a list of trimmed strings.

    Plain strings are split on newlines only; package specs such as
    ``numpy>=1.2,<2`` legitimately contain commas.
    """

    if value is None:
        return []

    if isinstance(value, (str, bytes)):
        text = value.decode() if isinstance(value, bytes) else value
        return [line.strip() for line in text.splitlines() if line.strip()]

    if isinstance(value, Sequence):
        items: List[str] = []
        for item in value:
            if not isinstance(item, (str, bytes)):
                label = f"{field_name} " if field_name else ""
                raise TypeError(f"{label}entries must be strings")
            text = str(item).strip()
            if text:
                items.append(text)
        return items

    label = f"{field_name} " if field_name else ""
    raise TypeError(f"{label}must be a string or sequence of strings")


def coerce_bool(value: Any, *, field_name: str, default: bool = False) -> bool:
    """Interpret TOML/YAML booleans and INI-style ``true``/``false`` strings."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
    raise TypeError(f"{field_name} must be a boolean")


__all__ = [
    "ConfigLoader",
    "FILE_LOADERS",
    "coerce_bool",
    "load_config_file",
    "normalize_string_list",
    "register_loader",
]
