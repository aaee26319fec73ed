"""The delivery context shared by every orchestration component."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Dict, List

import yaml

from core.template import TemplateResolver

from .config import CondaSection, DeliveryDefinition, GlobalSettings, JFrogSettings, MetaSection, TestDefinition
from .environment import EnvironmentStore, SystemInfo
from .manifest import Manifest, ManifestList


@dataclass(slots=True)
class Storage:
    root: Path
    tmpdir: Path
    delivery_dir: Path
    tools_dir: Path
    conda_install_prefix: Path
    conda_artifact_dir: Path
    conda_staging_dir: Path
    wheel_artifact_dir: Path
    wheel_staging_dir: Path
    build_dir: Path
    build_recipes_dir: Path
    build_sources_dir: Path
    build_testing_dir: Path
    conda_staging_url: str | None = None

    @classmethod
    def from_root(cls, root: Path, *, tmpdir: Path | None = None, conda_prefix: Path | None = None) -> "Storage":
        root = root.expanduser().resolve()
        build_dir = root / "build"
        return cls(
            root=root,
            tmpdir=tmpdir or root / "tmp",
            delivery_dir=root / "output" / "delivery",
            tools_dir=root / "tools",
            conda_install_prefix=conda_prefix or root / "conda",
            conda_artifact_dir=root / "output" / "packages" / "conda",
            conda_staging_dir=root / "stage" / "conda",
            wheel_artifact_dir=root / "output" / "packages" / "wheels",
            wheel_staging_dir=root / "stage" / "wheels",
            build_dir=build_dir,
            build_recipes_dir=build_dir / "recipes",
            build_sources_dir=build_dir / "sources",
            build_testing_dir=build_dir / "testing",
        )

    def directories(self) -> List[Path]:
        return [
            self.tmpdir,
            self.delivery_dir,
            self.tools_dir,
            self.conda_artifact_dir,
            self.conda_staging_dir,
            self.wheel_artifact_dir,
            self.wheel_staging_dir,
            self.build_recipes_dir,
            self.build_sources_dir,
            self.build_testing_dir,
        ]

    def ensure(self) -> None:
        for directory in self.directories():
            directory.mkdir(parents=True, exist_ok=True)

    def to_mapping(self) -> Dict[str, str]:
        return {item.name: str(getattr(self, item.name)) for item in fields(self) if getattr(self, item.name) is not None}


@dataclass(slots=True)
class ReleaseInfo:
    release_name: str
    time_now: datetime


def python_compact(version: str) -> str:
    """``3.11`` -> ``311``; only the major and minor components are kept."""

    return "".join(version.split(".")[:2])


def release_name(meta: MetaSection, system: SystemInfo) -> str:
    parts: List[str] = []
    if meta.mission == "hst" and meta.codename:
        parts.append(meta.codename)
    parts.extend([meta.name, meta.version])
    if not meta.final:
        parts.append(f"rc{meta.rc}")
    parts.extend([f"py{python_compact(meta.python)}", system.release_platform, system.arch])
    return "-".join(parts)


@dataclass
class DeliveryContext:
    """Everything one delivery run knows; created once and mutated by the run."""

    system: SystemInfo
    storage: Storage
    meta: MetaSection
    info: ReleaseInfo
    conda: CondaSection
    manifest: Manifest
    environment: EnvironmentStore
    settings: GlobalSettings
    tests: List[TestDefinition] = field(default_factory=list)
    runtime: Dict[str, str] = field(default_factory=dict)
    jfrog: JFrogSettings = field(default_factory=JFrogSettings)

    @classmethod
    def create(
        cls,
        definition: DeliveryDefinition,
        settings: GlobalSettings,
        *,
        root: Path,
        system: SystemInfo | None = None,
        environment: EnvironmentStore | None = None,
        now: datetime | None = None,
    ) -> "DeliveryContext":
        system = system or SystemInfo.detect()
        storage = Storage.from_root(root, tmpdir=settings.tmpdir)
        storage.conda_staging_url = settings.conda_staging_url
        environment = environment if environment is not None else EnvironmentStore.from_os()
        info = ReleaseInfo(release_name=release_name(definition.meta, system), time_now=now or datetime.now())

        resolver = TemplateResolver(
            {
                "meta": {
                    "name": definition.meta.name,
                    "version": definition.meta.version,
                    "rc": definition.meta.rc,
                    "python": definition.meta.python,
                    "python_compact": python_compact(definition.meta.python),
                    "mission": definition.meta.mission,
                    "codename": definition.meta.codename or "",
                },
                "info": {"release_name": info.release_name},
                "system": system.to_mapping(),
                "storage": storage.to_mapping(),
                "env": environment.snapshot(),
            }
        )
        runtime = {key: str(resolver.resolve(value)) for key, value in definition.runtime.items()}
        tests = [
            TestDefinition(
                name=test.name,
                version=test.version,
                repository=resolver.resolve(test.repository),
                script=resolver.resolve(test.script),
                build_recipe=resolver.resolve(test.build_recipe),
                runtime={key: str(resolver.resolve(value)) for key, value in test.runtime.items()},
            )
            for test in definition.tests
        ]
        environment.update(runtime)

        resolved = DeliveryDefinition(
            meta=definition.meta,
            conda=definition.conda,
            runtime=runtime,
            tests=tests,
            jfrog=definition.jfrog,
        )
        manifest = Manifest.from_specs(
            conda_packages=definition.conda.conda_packages,
            conda_packages_defer=definition.conda.conda_packages_defer,
            pip_packages=definition.conda.pip_packages,
            pip_packages_defer=definition.conda.pip_packages_defer,
            recipes=resolved.recipes(),
            sources=resolved.sources(),
        )
        jfrog = definition.jfrog if definition.jfrog.enabled else settings.jfrog
        return cls(
            system=system,
            storage=storage,
            meta=definition.meta,
            info=info,
            conda=definition.conda,
            manifest=manifest,
            environment=environment,
            settings=settings,
            tests=tests,
            runtime=runtime,
            jfrog=jfrog,
        )

    @property
    def env_name(self) -> str:
        return self.info.release_name

    def installer_url(self) -> str:
        platform_name = self.conda.installer_platform or self.system.conda_installer_platform
        arch = self.conda.installer_arch or self.system.arch
        name = self.conda.installer_name
        if self.conda.installer_version:
            name = f"{name}-{self.conda.installer_version}"
        return f"{self.conda.installer_baseurl}/{name}-{platform_name}-{arch}.sh"

    def release_header(self) -> str:
        lines = [
            f"# name: {self.meta.name}",
            f"# version: {self.meta.version}",
            f"# rc: {self.meta.rc}",
            f"# final: {str(self.meta.final).lower()}",
            f"# mission: {self.meta.mission}",
            f"# platform: {self.system.conda_subdir}",
            f"# python: {self.meta.python}",
            f"# release: {self.info.release_name}",
            f"# created: {self.info.time_now.isoformat(timespec='seconds')}",
        ]
        if self.meta.codename:
            lines.insert(1, f"# codename: {self.meta.codename}")
        if self.meta.based_on:
            lines.append(f"# based_on: {self.meta.based_on}")
        return "\n".join(lines) + "\n"

    def rewrite_spec(self, path: Path) -> None:
        """Finalize an exported environment file for distribution.

        The local prefix is dropped, the environment is named after the
        release, and the local artifact channel is replaced by the staging
        URL (or removed when there is none).
        """

        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise TypeError(f"Environment file '{path}' must contain a mapping")

        data.pop("prefix", None)
        data["name"] = self.info.release_name
        local_channels = {str(self.storage.conda_artifact_dir), f"file://{self.storage.conda_artifact_dir}"}
        channels: List[str] = []
        for channel in data.get("channels") or []:
            if str(channel).rstrip("/") in local_channels:
                if self.storage.conda_staging_url:
                    channels.append(self.storage.conda_staging_url)
                continue
            channels.append(channel)
        if "channels" in data:
            data["channels"] = channels

        body = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
        path.write_text(self.release_header() + body, encoding="utf-8")

    def describe_meta(self) -> List[str]:
        meta = self.meta
        return [
            f"Name: {meta.name}",
            f"Mission: {meta.mission}",
            f"Codename: {meta.codename or 'N/A'}",
            f"Version: {meta.version}",
            f"RC Level: {meta.rc}",
            f"Final Release: {'Yes' if meta.final else 'No'}",
            f"Based On: {meta.based_on or 'New'}",
            f"Release Name: {self.info.release_name}",
        ]

    def describe_conda(self) -> List[str]:
        lines = [
            f"Installer: {self.installer_url()}",
            f"Prefix: {self.storage.conda_install_prefix}",
            f"Python: {self.meta.python}",
        ]
        for name in ManifestList:
            specs = self.manifest.specs(name)
            lines.append(f"{name.value}: {', '.join(specs) if specs else 'N/A'}")
        return lines

    def describe_tests(self) -> List[str]:
        if not self.tests:
            return ["No tests defined"]
        return [f"{test.name} {test.version or ''} {test.repository or ''}".rstrip() for test in self.tests]

    def describe_runtime(self) -> List[str]:
        return [f"{key}={value}" for key, value in self.runtime.items()]
