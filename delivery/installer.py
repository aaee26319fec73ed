"""Install the delivery packages in strictly ordered phases."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Sequence

from core.command_runner import CommandResult, SpawnError, format_command

from .conda import CondaDriver
from .console import Console
from .manifest import ManifestEntry, ManifestList, PackageKind
from .pipeline import BuildPipeline, PipelineResult

if TYPE_CHECKING:  # pragma: no cover
    from .context import DeliveryContext


class Phase(str, Enum):
    START = "start"
    INSTALL_CONDA_DIRECT = "install-conda-direct"
    INSTALL_PIP_DIRECT = "install-pip-direct"
    BUILD_CONDA_DEFERRED = "build-conda-deferred"
    BUILD_PIP_DEFERRED = "build-pip-deferred"
    DONE = "done"
    ERROR = "error"


# Deferred builds may need tools that the direct installs provide.
PHASE_ORDER = (
    Phase.INSTALL_CONDA_DIRECT,
    Phase.INSTALL_PIP_DIRECT,
    Phase.BUILD_CONDA_DEFERRED,
    Phase.BUILD_PIP_DEFERRED,
)

_PHASE_LISTS = {
    Phase.INSTALL_CONDA_DIRECT: ManifestList.CONDA_DIRECT,
    Phase.INSTALL_PIP_DIRECT: ManifestList.PIP_DIRECT,
    Phase.BUILD_CONDA_DEFERRED: ManifestList.CONDA_DEFERRED,
    Phase.BUILD_PIP_DEFERRED: ManifestList.PIP_DEFERRED,
}


@dataclass(slots=True)
class PhaseOutcome:
    phase: Phase
    packages: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    failed_command: str | None = None
    pipeline: PipelineResult | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def empty(self) -> bool:
        return not self.packages


@dataclass(slots=True)
class InstallSummary:
    outcomes: List[PhaseOutcome] = field(default_factory=list)
    history: List[Phase] = field(default_factory=lambda: [Phase.START])

    @property
    def state(self) -> Phase:
        return self.history[-1]

    @property
    def failed(self) -> List[PhaseOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def render(self) -> List[str]:
        lines: List[str] = []
        for outcome in self.outcomes:
            if outcome.empty:
                status = "nothing to do"
            elif outcome.ok:
                status = f"ok ({len(outcome.packages)} packages)"
            else:
                status = "FAILED"
            lines.append(f"{outcome.phase.value}: {status}")
            lines.extend(f"    {failure}" for failure in outcome.failures)
        return lines


class DeliveryAborted(RuntimeError):
    """Raised when a phase fails and continue-on-error is disabled."""

    def __init__(self, outcome: PhaseOutcome, summary: InstallSummary):
        detail = "; ".join(outcome.failures)
        message = f"Phase '{outcome.phase.value}' failed: {detail}"
        if outcome.failed_command:
            message += f" (command: {outcome.failed_command})"
        super().__init__(message)
        self.phase = outcome.phase
        self.command = outcome.failed_command
        self.summary = summary


class PhasedInstaller:
    """Run ``START -> conda direct -> pip direct -> conda deferred -> pip deferred -> DONE``.

    A failed phase moves the machine to ``ERROR`` and raises
    :class:`DeliveryAborted`, unless ``continue_on_error`` is set, in which
    case the failure is recorded and the next phase runs.
    """

    def __init__(
        self,
        driver: CondaDriver,
        pipeline: BuildPipeline,
        console: Console,
        *,
        continue_on_error: bool = False,
    ) -> None:
        self._driver = driver
        self._pipeline = pipeline
        self._console = console
        self.continue_on_error = continue_on_error

    def run(self, context: "DeliveryContext", env_name: str) -> InstallSummary:
        summary = InstallSummary()
        for phase in PHASE_ORDER:
            summary.history.append(phase)
            entries = context.manifest.entries(_PHASE_LISTS[phase])
            outcome = PhaseOutcome(phase=phase, packages=[entry.spec for entry in entries])
            summary.outcomes.append(outcome)
            if not entries:
                self._console.debug(f"{phase.value}: no packages")
                continue

            self._console.section(f"{phase.value} ({len(entries)} packages)")
            if phase in (Phase.INSTALL_CONDA_DIRECT, Phase.INSTALL_PIP_DIRECT):
                self._install_direct(outcome, entries, env_name)
            else:
                self._build_deferred(outcome, entries, context, env_name)

            if not outcome.ok:
                for failure in outcome.failures:
                    self._console.error(f"{phase.value}: {failure}")
                if not self.continue_on_error:
                    summary.history.append(Phase.ERROR)
                    raise DeliveryAborted(outcome, summary)

        summary.history.append(Phase.DONE)
        return summary

    def _execute(self, outcome: PhaseOutcome, kind: PackageKind, args: Sequence[str]) -> None:
        runner = self._driver.conda if kind is PackageKind.CONDA else self._driver.pip
        try:
            result: CommandResult = runner(*args)
        except SpawnError as exc:
            outcome.failed_command = format_command(exc.command)
            outcome.failures.append(str(exc))
            return
        command = format_command(result.command)
        outcome.commands.append(command)
        if result.returncode != 0:
            outcome.failed_command = command
            outcome.failures.append(f"exit code {result.returncode}")

    def _install_direct(self, outcome: PhaseOutcome, entries: Sequence[ManifestEntry], env_name: str) -> None:
        specs = [entry.spec for entry in entries]
        if entries[0].kind is PackageKind.CONDA:
            self._execute(outcome, PackageKind.CONDA, ["install", "-n", env_name, *specs])
        else:
            self._execute(outcome, PackageKind.PIP, ["install", *specs])

    def _build_deferred(
        self,
        outcome: PhaseOutcome,
        entries: Sequence[ManifestEntry],
        context: "DeliveryContext",
        env_name: str,
    ) -> None:
        kind = entries[0].kind
        result = self._pipeline.run(entries, kind, context, stop_on_failure=not self.continue_on_error)
        outcome.pipeline = result
        outcome.failures.extend(result.failures)
        if not outcome.ok and not self.continue_on_error:
            return

        built = result.built
        if not built:
            return
        if kind is PackageKind.CONDA:
            channel = f"file://{context.storage.conda_artifact_dir}"
            self._execute(outcome, kind, ["install", "-n", env_name, "-c", channel, *[entry.spec for entry in built]])
        else:
            names = [entry.name if entry.is_source_reference else entry.spec for entry in built]
            self._execute(
                outcome,
                kind,
                ["install", "--find-links", str(context.storage.wheel_artifact_dir), *names],
            )


__all__ = [
    "DeliveryAborted",
    "InstallSummary",
    "PHASE_ORDER",
    "Phase",
    "PhaseOutcome",
    "PhasedInstaller",
]
