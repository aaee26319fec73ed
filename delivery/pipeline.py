"""Build deferred packages, index the local channel and hand artifacts to a publisher."""
from __future__ import annotations

from dataclasses import dataclass, field
from html import escape
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Protocol, Sequence
import re
import shutil

from core.command_runner import CommandRunner, SpawnError, format_command

from .conda import CondaDriver
from .config import JFrogSettings
from .console import Console
from .environment import EnvironmentStore
from .manifest import ManifestEntry, PackageKind

if TYPE_CHECKING:  # pragma: no cover
    from .context import DeliveryContext

WHEEL_CHANNEL = "wheels"
SIMPLE_INDEX_DIR = "simple"

CONDA_SUBDIRS = frozenset(
    {"noarch", "linux-64", "linux-aarch64", "linux-ppc64le", "osx-64", "osx-arm64", "win-64"}
)
# Written by `conda index` into every subdir, and at the channel root.
SUBDIR_INDEX_FILES = (
    "repodata.json",
    "repodata.json.bz2",
    "repodata.json.zst",
    "current_repodata.json",
    "repodata_from_packages.json",
    "index.html",
)
CHANNEL_INDEX_FILES = ("channeldata.json", "index.html")


class BuildFailed(RuntimeError):
    """Raised by a recipe builder when a single package cannot be built."""


class RecipeBuilder(Protocol):
    def reference_for(self, entry: ManifestEntry) -> str | None:
        ...

    def build(self, entry: ManifestEntry, context: "DeliveryContext") -> List[Path]:
        ...


@dataclass(slots=True)
class UploadResult:
    path: Path
    destination: str
    ok: bool
    message: str = ""


class ArtifactPublisher(Protocol):
    def publish(self, paths: Sequence[Path], channel: str) -> List[UploadResult]:
        ...


@dataclass(slots=True)
class BuildRecord:
    entry: ManifestEntry
    artifacts: List[Path] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False
    ignored: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


@dataclass(slots=True)
class PipelineResult:
    kind: PackageKind
    records: List[BuildRecord] = field(default_factory=list)
    indexed: bool = False
    index_error: str | None = None
    uploads: List[UploadResult] = field(default_factory=list)

    @property
    def artifacts(self) -> List[Path]:
        return [path for record in self.records for path in record.artifacts]

    @property
    def built(self) -> List[ManifestEntry]:
        return [record.entry for record in self.records if record.ok and not record.ignored]

    @property
    def failures(self) -> List[str]:
        messages = [f"{record.entry.name}: {record.error}" for record in self.records if record.error]
        messages.extend(f"{record.entry.name}: skipped" for record in self.records if record.skipped)
        if self.index_error:
            messages.append(self.index_error)
        messages.extend(f"upload {upload.path.name}: {upload.message}" for upload in self.uploads if not upload.ok)
        return messages

    @property
    def ok(self) -> bool:
        return not self.failures


def _split_source(reference: str) -> tuple[str, str | None]:
    """Return ``(url_or_path, ref)`` for ``git+https://host/repo.git@ref`` style references."""

    text = reference.strip()
    if " @ " in text:
        text = text.split(" @ ", 1)[1].strip()
    if text.startswith("git+"):
        text = text[len("git+"):]
    ref: str | None = None
    head, sep, tail = text.rpartition("@")
    if sep and "/" not in tail and "/" in head:
        text, ref = head, tail
    return text, ref


def checkout_source(driver: CondaDriver, reference: str, destination: Path) -> Path:
    """Make ``reference`` available locally: a directory is used in place, anything else is cloned."""

    location, ref = _split_source(reference)
    local = Path(location).expanduser()
    if local.is_dir():
        return local

    if destination.exists() and not driver.dry_run:
        shutil.rmtree(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    command = ["git", "clone", "--recursive"]
    if ref:
        command.extend(["--branch", ref])
    command.extend([location, str(destination)])
    result = driver.run(command, note=f"clone {destination.name}")
    if result.returncode != 0:
        raise BuildFailed(f"Unable to clone {location} (exit code {result.returncode})")
    return destination


class CondaRecipeBuilder:
    """Build a conda package from a recipe repository or directory."""

    def __init__(self, driver: CondaDriver) -> None:
        self._driver = driver

    def reference_for(self, entry: ManifestEntry) -> str | None:
        return entry.recipe

    def build(self, entry: ManifestEntry, context: "DeliveryContext") -> List[Path]:
        reference = self.reference_for(entry)
        if not reference:
            raise BuildFailed("no build recipe configured")
        checkout = checkout_source(self._driver, reference, context.storage.build_recipes_dir / entry.name)
        recipe_dir = checkout / "recipe" if (checkout / "recipe").is_dir() else checkout

        args = [
            "build",
            "--python",
            context.meta.python,
            "--output-folder",
            str(context.storage.conda_artifact_dir),
            str(recipe_dir),
        ]
        result = self._driver.conda(*args)
        if result.returncode != 0:
            raise BuildFailed(f"conda build failed (exit code {result.returncode})")

        outputs = self._driver.conda(*args[:1], "--output", *args[1:])
        if outputs.returncode != 0:
            raise BuildFailed(f"unable to query conda build outputs (exit code {outputs.returncode})")
        return [Path(line.strip()) for line in outputs.stdout.splitlines() if line.strip()]


class WheelBuilder:
    """Build a wheel from a source repository or directory."""

    def __init__(self, driver: CondaDriver) -> None:
        self._driver = driver

    def reference_for(self, entry: ManifestEntry) -> str | None:
        return entry.recipe or (entry.spec if entry.is_source_reference else None)

    def build(self, entry: ManifestEntry, context: "DeliveryContext") -> List[Path]:
        reference = self.reference_for(entry)
        if not reference:
            raise BuildFailed("no source repository configured")
        source = checkout_source(self._driver, reference, context.storage.build_sources_dir / entry.name)

        # Emptied before every build: whatever it holds afterwards came from this entry.
        output_dir = context.storage.build_dir / "wheels" / entry.name
        if output_dir.exists() and not self._driver.dry_run:
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        result = self._driver.pip("wheel", "--no-deps", "--wheel-dir", str(output_dir), str(source))
        if result.returncode != 0:
            raise BuildFailed(f"pip wheel failed (exit code {result.returncode})")

        wheel_dir = context.storage.wheel_artifact_dir
        wheel_dir.mkdir(parents=True, exist_ok=True)
        artifacts: List[Path] = []
        for wheel in sorted(output_dir.glob("*.whl")):
            artifacts.append(wheel.replace(wheel_dir / wheel.name))
        return artifacts


def normalize_project_name(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def write_simple_index(wheel_dir: Path) -> Path:
    """Write a PEP 503 style ``simple/`` index for the wheels in ``wheel_dir``."""

    index_root = wheel_dir / SIMPLE_INDEX_DIR
    projects: Dict[str, List[Path]] = {}
    for wheel in sorted(wheel_dir.glob("*.whl")):
        projects.setdefault(normalize_project_name(wheel.name.split("-", 1)[0]), []).append(wheel)

    index_root.mkdir(parents=True, exist_ok=True)
    links: List[str] = []
    for project, wheels in sorted(projects.items()):
        project_dir = index_root / project
        project_dir.mkdir(exist_ok=True)
        anchors = "\n".join(
            f'    <a href="../../{escape(wheel.name)}">{escape(wheel.name)}</a><br/>' for wheel in wheels
        )
        (project_dir / "index.html").write_text(_html_page(f"Links for {project}", anchors), encoding="utf-8")
        links.append(f'    <a href="{escape(project)}/">{escape(project)}</a><br/>')
    (index_root / "index.html").write_text(_html_page("Simple index", "\n".join(links)), encoding="utf-8")
    return index_root


def _html_page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n<html>\n  <head><title>"
        + escape(title)
        + "</title></head>\n  <body>\n"
        + body
        + ("\n" if body else "")
        + "  </body>\n</html>\n"
    )


def artifact_channel(path: Path, channel: str) -> str:
    """The subdir a conda artifact was built for, falling back to ``channel``."""

    if channel != WHEEL_CHANNEL and path.parent.name in CONDA_SUBDIRS:
        return path.parent.name
    return channel


class StagingPublisher:
    """Copy conda artifacts into ``<conda_root>/<subdir>/`` and wheels into ``wheel_root``.

    Conda artifacts keep the subdir they were built for, and the index files
    ``conda index`` wrote beside them are copied along so the staging tree is
    an installable channel.
    """

    def __init__(self, console: Console, conda_root: Path, wheel_root: Path) -> None:
        self._console = console
        self._conda_root = conda_root
        self._wheel_root = wheel_root

    def destination_for(self, channel: str) -> Path:
        if channel == WHEEL_CHANNEL:
            return self._wheel_root
        return self._conda_root / channel

    def publish(self, paths: Sequence[Path], channel: str) -> List[UploadResult]:
        results: List[UploadResult] = []
        indexed_dirs: Dict[Path, Path] = {}
        for path in paths:
            destination = self.destination_for(artifact_channel(path, channel))
            if self._console.dry_run:
                self._console.dry(f"stage {path} -> {destination}")
                results.append(UploadResult(path=path, destination=str(destination), ok=True))
                continue
            try:
                destination.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, destination / path.name)
            except OSError as exc:
                results.append(UploadResult(path=path, destination=str(destination), ok=False, message=str(exc)))
                continue
            self._console.debug(f"Staged {path.name} in {destination}")
            results.append(UploadResult(path=path, destination=str(destination), ok=True))
            if channel != WHEEL_CHANNEL and path.parent.name in CONDA_SUBDIRS:
                indexed_dirs[path.parent] = destination

        for source, destination in indexed_dirs.items():
            self._copy_index(source, destination, SUBDIR_INDEX_FILES)
            self._copy_index(source.parent, destination.parent, CHANNEL_INDEX_FILES)
        return results

    def _copy_index(self, source: Path, destination: Path, names: Sequence[str]) -> None:
        for name in names:
            if (source / name).is_file():
                shutil.copy2(source / name, destination / name)


class JFrogPublisher:
    """Upload artifacts with the JFrog CLI; credentials come from the CLI's own configuration."""

    def __init__(
        self,
        runner: CommandRunner,
        console: Console,
        settings: JFrogSettings,
        environment: EnvironmentStore,
        *,
        prefix: str,
    ) -> None:
        if not settings.enabled:
            raise ValueError("JFrog publishing requires both url and repo")
        self._runner = runner
        self._console = console
        self._settings = settings
        self._environment = environment
        self._prefix = prefix.strip("/")

    def publish(self, paths: Sequence[Path], channel: str) -> List[UploadResult]:
        results: List[UploadResult] = []
        for path in paths:
            destination = f"{self._settings.repo}/{self._prefix}/{artifact_channel(path, channel)}/"
            command = [
                self._settings.cli,
                "rt",
                "upload",
                f"--url={self._settings.url}",
                "--flat=true",
                str(path),
                destination,
            ]
            self._console.debug(f"Executing: {format_command(command)}")
            try:
                result = self._runner.run(command, env=self._environment.snapshot(), note="upload")
            except SpawnError as exc:
                results.append(UploadResult(path=path, destination=destination, ok=False, message=str(exc)))
                continue
            message = "" if result.ok else (result.stderr.strip() or f"exit code {result.returncode}")
            results.append(UploadResult(path=path, destination=destination, ok=result.ok, message=message))
        return results


class BuildPipeline:
    """Build every deferred entry of one kind, then index and publish the results."""

    def __init__(
        self,
        driver: CondaDriver,
        console: Console,
        *,
        builders: Dict[PackageKind, RecipeBuilder] | None = None,
        publisher: ArtifactPublisher | None = None,
    ) -> None:
        self._driver = driver
        self._console = console
        self._builders: Dict[PackageKind, RecipeBuilder] = builders or {
            PackageKind.CONDA: CondaRecipeBuilder(driver),
            PackageKind.PIP: WheelBuilder(driver),
        }
        self._publisher = publisher

    def run(
        self,
        entries: Sequence[ManifestEntry],
        kind: PackageKind,
        context: "DeliveryContext",
        *,
        stop_on_failure: bool = False,
    ) -> PipelineResult:
        result = PipelineResult(kind=kind)
        if not entries:
            return result

        builder = self._builders[kind]
        abandoned = False
        for entry in entries:
            record = BuildRecord(entry=entry)
            result.records.append(record)
            if abandoned:
                record.skipped = True
                continue
            if not builder.reference_for(entry):
                record.ignored = True
                self._console.warn(f"'{entry.name}' has no build recipe; it is not built or installed")
                continue
            self._console.info(f"Building {kind.value} package '{entry.name}'")
            try:
                record.artifacts = builder.build(entry, context)
            except (BuildFailed, SpawnError) as exc:
                record.error = str(exc)
                self._console.error(f"Build of '{entry.name}' failed: {exc}")
                abandoned = stop_on_failure

        self._index(result, context)
        if self._publisher is not None and result.artifacts:
            channel = context.system.conda_subdir if kind is PackageKind.CONDA else WHEEL_CHANNEL
            result.uploads = self._publisher.publish(result.artifacts, channel)
            for upload in result.uploads:
                if not upload.ok:
                    self._console.error(f"Upload of {upload.path.name} failed: {upload.message}")
        return result

    def _index(self, result: PipelineResult, context: "DeliveryContext") -> None:
        if result.kind is PackageKind.CONDA:
            directory = context.storage.conda_artifact_dir
            outcome = self._driver.index(directory)
            if outcome.returncode != 0:
                result.index_error = f"conda index {directory} failed (exit code {outcome.returncode})"
                self._console.error(result.index_error)
                return
        elif self._console.dry_run:
            self._console.dry(f"write simple index for {context.storage.wheel_artifact_dir}")
        else:
            write_simple_index(context.storage.wheel_artifact_dir)
        result.indexed = True


__all__ = [
    "ArtifactPublisher",
    "BuildFailed",
    "BuildPipeline",
    "BuildRecord",
    "CondaRecipeBuilder",
    "JFrogPublisher",
    "PipelineResult",
    "RecipeBuilder",
    "StagingPublisher",
    "UploadResult",
    "WheelBuilder",
    "artifact_channel",
    "checkout_source",
    "normalize_project_name",
    "write_simple_index",
]
