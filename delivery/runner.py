"""Top-level delivery orchestration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List

from core.command_runner import CommandRunner

from .classifier import Classification, PackageClassifier
from .conda import CondaDriver, CondaInstaller, SetupError
from .console import Console
from .context import DeliveryContext
from .installer import InstallSummary, PhasedInstaller
from .manifest import PackageKind
from .pipeline import ArtifactPublisher, BuildPipeline, JFrogPublisher, StagingPublisher


@dataclass(slots=True)
class DeliveryResult:
    summary: InstallSummary
    classifications: List[Classification]
    spec_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.summary.ok


class DeliveryRunner:
    """Drive one delivery from a bare directory to an exported environment file."""

    def __init__(
        self,
        context: DeliveryContext,
        runner: CommandRunner,
        console: Console,
        *,
        publish: bool = True,
        classifier: PackageClassifier | None = None,
    ) -> None:
        self.context = context
        self._runner = runner
        self._console = console
        self._publish = publish
        self._classifier = classifier or PackageClassifier(console=console)
        self.driver = CondaDriver(
            runner,
            console,
            context.environment,
            prefix=context.storage.conda_install_prefix,
            tmpdir=context.storage.tmpdir,
        )

    def make_publisher(self) -> ArtifactPublisher | None:
        if not self._publish:
            return None
        if self.context.jfrog.enabled:
            return JFrogPublisher(
                self._runner,
                self._console,
                self.context.jfrog,
                self.context.environment,
                prefix=self.context.info.release_name,
            )
        return StagingPublisher(
            self._console,
            self.context.storage.conda_staging_dir,
            self.context.storage.wheel_staging_dir,
        )

    def run(self) -> DeliveryResult:
        context = self.context
        storage = context.storage
        settings = context.settings
        console = self._console

        console.section(f"Delivery {context.info.release_name}")
        storage.ensure()

        console.section("Installing conda")
        CondaInstaller(
            self._runner,
            console,
            prefix=storage.conda_install_prefix,
            download_dir=storage.tmpdir,
            fresh_start=settings.conda_fresh_start,
        ).install(context.installer_url())

        console.section("Configuring base environment")
        self.driver.activate("base")
        self.driver.setup_headless(settings)
        for tool, version in self.driver.tool_versions().items():
            console.info(f"{tool} {version}")

        console.section(f"Creating environment {context.env_name}")
        if context.meta.based_on:
            result = self.driver.env_create_from_uri(context.env_name, context.meta.based_on)
        else:
            result = self.driver.env_create(context.env_name, context.meta.python)
        if result.returncode != 0:
            raise SetupError(f"Unable to create conda environment '{context.env_name}' (exit code {result.returncode})")
        self.driver.activate(context.env_name)

        classifications = [
            self._classifier.classify(context.manifest, PackageKind.CONDA),
            self._classifier.classify(context.manifest, PackageKind.PIP),
        ]

        pipeline = BuildPipeline(self.driver, console, publisher=self.make_publisher())
        installer = PhasedInstaller(
            self.driver,
            pipeline,
            console,
            continue_on_error=settings.continue_on_error,
        )
        summary = installer.run(context, context.env_name)

        console.section("Exporting environment")
        spec_path = self.driver.env_export(context.env_name, storage.delivery_dir, context.info.release_name)
        if console.dry_run:
            console.dry(f"rewrite {spec_path}")
        else:
            context.rewrite_spec(spec_path)

        console.section("Summary")
        for line in summary.render():
            if summary.ok:
                console.info(line)
            else:
                console.error(line)
        return DeliveryResult(summary=summary, classifications=classifications, spec_path=spec_path)


__all__ = ["DeliveryResult", "DeliveryRunner"]
