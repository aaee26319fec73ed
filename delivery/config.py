"""Delivery definition and global settings loading."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping
import os

from core.config_loader import coerce_bool, load_config_file, normalize_string_list

SETTINGS_ENV_VAR = "DELIVERY_CONFIG"
MISSIONS = ("generic", "hst", "jwst", "roman")


def _string_mapping(value: Any, *, field_name: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a table of strings")
    return {str(key): str(val) for key, val in value.items()}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class JFrogSettings:
    url: str | None = None
    repo: str | None = None
    cli: str = "jf"

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.repo)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "JFrogSettings":
        if not data:
            return cls()
        return cls(
            url=_optional_str(data.get("url")),
            repo=_optional_str(data.get("repo")),
            cli=str(data.get("cli", "jf")),
        )


@dataclass(slots=True)
class GlobalSettings:
    """Process-wide settings, built once at startup and passed explicitly."""

    verbose: bool = False
    continue_on_error: bool = False
    always_update_base_environment: bool = False
    conda_fresh_start: bool = False
    tmpdir: Path | None = None
    conda_packages: List[str] = field(default_factory=list)
    pip_packages: List[str] = field(default_factory=list)
    conda_staging_url: str | None = None
    jfrog: JFrogSettings = field(default_factory=JFrogSettings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalSettings":
        section = data.get("global", data)
        if not isinstance(section, Mapping):
            raise TypeError("[global] must be a table")
        tmpdir = _optional_str(section.get("tmpdir"))
        return cls(
            verbose=coerce_bool(section.get("verbose"), field_name="global.verbose"),
            continue_on_error=coerce_bool(section.get("continue_on_error"), field_name="global.continue_on_error"),
            always_update_base_environment=coerce_bool(
                section.get("always_update_base_environment"),
                field_name="global.always_update_base_environment",
            ),
            conda_fresh_start=coerce_bool(section.get("conda_fresh_start"), field_name="global.conda_fresh_start"),
            tmpdir=Path(tmpdir).expanduser() if tmpdir else None,
            conda_packages=normalize_string_list(section.get("conda_packages"), field_name="global.conda_packages"),
            pip_packages=normalize_string_list(section.get("pip_packages"), field_name="global.pip_packages"),
            conda_staging_url=_optional_str(section.get("conda_staging_url")),
            jfrog=JFrogSettings.from_mapping(data.get("jfrog")),
        )

    @classmethod
    def load(cls, path: Path | None = None) -> "GlobalSettings":
        """Load settings from ``path``, ``$DELIVERY_CONFIG`` or fall back to defaults."""

        if path is None:
            env_path = os.environ.get(SETTINGS_ENV_VAR)
            if not env_path:
                return cls()
            path = Path(env_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        return cls.from_mapping(load_config_file(path))

    def override(self, **changes: Any) -> "GlobalSettings":
        """Return a copy with the non-``None`` CLI overrides applied."""

        return replace(self, **{key: value for key, value in changes.items() if value is not None})


@dataclass(slots=True)
class MetaSection:
    name: str
    version: str
    rc: int = 1
    python: str = "3"
    mission: str = "generic"
    codename: str | None = None
    based_on: str | None = None
    final: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MetaSection":
        name = _optional_str(data.get("name"))
        version = _optional_str(data.get("version"))
        if not name or not version:
            raise ValueError("meta.name and meta.version are required in a delivery definition")
        mission = str(data.get("mission", "generic")).lower()
        if mission not in MISSIONS:
            raise ValueError(f"meta.mission must be one of: {', '.join(MISSIONS)}")
        codename = _optional_str(data.get("codename"))
        if mission == "hst" and not codename:
            raise ValueError("meta.codename is required for hst deliveries")
        try:
            rc = int(data.get("rc", 1))
        except (TypeError, ValueError) as exc:
            raise TypeError("meta.rc must be an integer") from exc
        if rc < 1:
            raise ValueError("meta.rc must be 1 or greater")
        return cls(
            name=name,
            version=version,
            rc=rc,
            python=str(data.get("python", "3")),
            mission=mission,
            codename=codename,
            based_on=_optional_str(data.get("based_on")),
            final=coerce_bool(data.get("final"), field_name="meta.final"),
        )


@dataclass(slots=True)
class CondaSection:
    installer_baseurl: str = "https://github.com/conda-forge/miniforge/releases/latest/download"
    installer_name: str = "Miniforge3"
    installer_version: str | None = None
    installer_platform: str | None = None
    installer_arch: str | None = None
    conda_packages: List[str] = field(default_factory=list)
    conda_packages_defer: List[str] = field(default_factory=list)
    pip_packages: List[str] = field(default_factory=list)
    pip_packages_defer: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CondaSection":
        defaults = cls()
        return cls(
            installer_baseurl=str(data.get("installer_baseurl", defaults.installer_baseurl)).rstrip("/"),
            installer_name=str(data.get("installer_name", defaults.installer_name)),
            installer_version=_optional_str(data.get("installer_version")),
            installer_platform=_optional_str(data.get("installer_platform")),
            installer_arch=_optional_str(data.get("installer_arch")),
            conda_packages=normalize_string_list(data.get("conda_packages"), field_name="conda.conda_packages"),
            conda_packages_defer=normalize_string_list(
                data.get("conda_packages_defer"), field_name="conda.conda_packages_defer"
            ),
            pip_packages=normalize_string_list(data.get("pip_packages"), field_name="conda.pip_packages"),
            pip_packages_defer=normalize_string_list(
                data.get("pip_packages_defer"), field_name="conda.pip_packages_defer"
            ),
        )


@dataclass(slots=True)
class TestDefinition:
    name: str
    version: str | None = None
    repository: str | None = None
    script: str | None = None
    build_recipe: str | None = None
    runtime: Dict[str, str] = field(default_factory=dict)

    # Not a test case despite the name.
    __test__ = False

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "TestDefinition":
        if not name:
            raise ValueError("Test entries require a name")
        return cls(
            name=name,
            version=_optional_str(data.get("version")),
            repository=_optional_str(data.get("repository")),
            script=_optional_str(data.get("script")),
            build_recipe=_optional_str(data.get("build_recipe")),
            runtime=_string_mapping(data.get("runtime"), field_name=f"test.{name}.runtime"),
        )


def _parse_tests(data: Mapping[str, Any]) -> List[TestDefinition]:
    tests: List[TestDefinition] = []
    table = data.get("test")
    if table is not None:
        if not isinstance(table, Mapping):
            raise TypeError("[test] must be a table of named test sections")
        for name, section in table.items():
            if not isinstance(section, Mapping):
                raise TypeError(f"[test.{name}] must be a table")
            tests.append(TestDefinition.from_mapping(str(name), section))
    array = data.get("tests")
    if array is not None:
        if not isinstance(array, list):
            raise TypeError("[[tests]] must be an array of tables")
        for section in array:
            if not isinstance(section, Mapping):
                raise TypeError("[[tests]] entries must be tables")
            tests.append(TestDefinition.from_mapping(str(section.get("name", "")), section))
    names = [test.name for test in tests]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Duplicate test definitions: {', '.join(duplicates)}")
    return tests


@dataclass(slots=True)
class DeliveryDefinition:
    meta: MetaSection
    conda: CondaSection
    runtime: Dict[str, str] = field(default_factory=dict)
    tests: List[TestDefinition] = field(default_factory=list)
    jfrog: JFrogSettings = field(default_factory=JFrogSettings)
    source: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: Path | None = None) -> "DeliveryDefinition":
        meta_section = data.get("meta")
        if not isinstance(meta_section, Mapping):
            raise ValueError("[meta] section is required in a delivery definition")
        conda_section = data.get("conda", {})
        if not isinstance(conda_section, Mapping):
            raise TypeError("[conda] must be a table")
        deploy = data.get("deploy", {})
        jfrog = deploy.get("jfrog") if isinstance(deploy, Mapping) else None
        return cls(
            meta=MetaSection.from_mapping(meta_section),
            conda=CondaSection.from_mapping(conda_section),
            runtime=_string_mapping(data.get("runtime"), field_name="runtime"),
            tests=_parse_tests(data),
            jfrog=JFrogSettings.from_mapping(jfrog),
            source=source,
        )

    @classmethod
    def load(cls, path: Path) -> "DeliveryDefinition":
        if not path.exists():
            raise FileNotFoundError(f"Delivery definition not found: {path}")
        return cls.from_mapping(load_config_file(path), source=path)

    def recipes(self) -> Dict[str, str]:
        return {test.name: test.build_recipe for test in self.tests if test.build_recipe}

    def sources(self) -> Dict[str, str]:
        return {test.name: test.repository for test in self.tests if test.repository}


__all__ = [
    "CondaSection",
    "DeliveryDefinition",
    "GlobalSettings",
    "JFrogSettings",
    "MetaSection",
    "TestDefinition",
]
