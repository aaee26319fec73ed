"""Drive conda, mamba, python and pip through the command runner."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence
import shutil
import urllib.error
import urllib.request

from core.command_runner import CommandError, CommandResult, CommandRunner, SpawnError, format_command

from .activation import ActivationReport, EnvironmentActivator
from .config import GlobalSettings
from .console import Console
from .environment import EnvironmentStore

# Subcommands that are faster or only available through mamba.
MAMBA_SUBCOMMANDS = frozenset(
    {
        "build",
        "install",
        "update",
        "create",
        "list",
        "search",
        "run",
        "info",
        "clean",
        "activate",
        "deactivate",
    }
)

REQUIRED_TOOLS = ("boa", "conda-build", "conda-verify")

HEADLESS_SETTINGS = (
    ("auto_update_conda", "false"),
    ("always_yes", "true"),
    ("safety_checks", "disabled"),
    ("rollback_enabled", "false"),
    ("report_errors", "false"),
    ("solver", "libmamba"),
)


class SetupError(RuntimeError):
    """Raised when configuring the base environment fails; always fatal."""


class PackageRequirementUnmet(RuntimeError):
    """Raised when the base environment lacks the tools needed to build packages."""

    def __init__(self, missing: Sequence[str], detail: str | None = None):
        message = detail or (
            "The base environment lacks the minimum software required to build conda packages: "
            + ", ".join(missing)
        )
        super().__init__(message)
        self.missing = list(missing)


class CondaDriver:
    """Compose and run package-manager command lines in the captured environment."""

    def __init__(
        self,
        runner: CommandRunner,
        console: Console,
        environment: EnvironmentStore,
        *,
        prefix: Path,
        tmpdir: Path,
    ) -> None:
        self._runner = runner
        self._console = console
        self._environment = environment
        self.prefix = prefix
        self._activator = EnvironmentActivator(runner, console, environment, tmpdir=tmpdir)

    @property
    def dry_run(self) -> bool:
        return self._console.dry_run

    @staticmethod
    def program_for(subcommand: str) -> str:
        return "mamba" if subcommand in MAMBA_SUBCOMMANDS else "conda"

    def run(self, command: Sequence[str], *, check: bool = False, cwd: Path | None = None, note: str | None = None) -> CommandResult:
        self._console.debug(f"Executing: {format_command(command)}")
        return self._runner.run(
            list(command),
            cwd=cwd,
            env=self._environment.snapshot(),
            check=check,
            note=note,
        )

    def conda(self, *args: str, check: bool = False, cwd: Path | None = None) -> CommandResult:
        if not args:
            raise ValueError("conda requires a subcommand")
        return self.run([self.program_for(args[0]), *args], check=check, cwd=cwd)

    def python(self, *args: str, check: bool = False, cwd: Path | None = None) -> CommandResult:
        return self.run(["python", *args], check=check, cwd=cwd)

    def pip(self, *args: str, check: bool = False, cwd: Path | None = None) -> CommandResult:
        return self.python("-m", "pip", *args, check=check, cwd=cwd)

    def activate(self, env_name: str) -> ActivationReport:
        if self.dry_run:
            self._console.dry(f"activate {env_name} from {self.prefix}")
            return ActivationReport(env_name=env_name)
        return self._activator.activate(self.prefix, env_name)

    def _setup_step(self, description: str, result: CommandResult) -> None:
        if result.returncode != 0:
            raise SetupError(f"{description} failed (exit code {result.returncode}): {format_command(result.command)}")

    def setup_headless(self, settings: GlobalSettings) -> None:
        """Configure the base installation for unattended use and install base tooling."""

        quiet = "false" if settings.verbose else "true"
        self._setup_step("Configuring conda", self.conda("config", "--system", "--set", "quiet", quiet))
        for key, value in HEADLESS_SETTINGS:
            self._setup_step("Configuring conda", self.conda("config", "--system", "--set", key, value))

        if settings.conda_packages:
            self._setup_step(
                "Installing user-defined base packages (conda)",
                self.conda("install", *settings.conda_packages),
            )
        if settings.pip_packages:
            self._setup_step(
                "Installing user-defined base packages (pip)",
                self.pip("install", *settings.pip_packages),
            )

        self.check_required()

        if settings.always_update_base_environment:
            self._setup_step("Updating the base environment", self.conda("update", "--all"))

    def check_required(self) -> None:
        pattern = "|".join(f"^{tool}" for tool in REQUIRED_TOOLS)
        result = self.conda("list", pattern)
        if self.dry_run:
            self._console.dry(f"skipping check for {', '.join(REQUIRED_TOOLS)}")
            return
        if result.returncode != 0:
            raise PackageRequirementUnmet(
                list(REQUIRED_TOOLS),
                detail="The base package requirement check could not be performed",
            )
        found = set()
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            found.add(line.split()[0])
        missing = [tool for tool in REQUIRED_TOOLS if tool not in found]
        if missing:
            raise PackageRequirementUnmet(missing)

    def env_create(self, name: str, python_version: str, packages: Sequence[str] = ()) -> CommandResult:
        return self.conda("create", "-n", name, f"python={python_version}", *packages)

    def env_create_from_uri(self, name: str, uri: str) -> CommandResult:
        return self.conda("env", "create", "-n", name, "-f", uri)

    def env_export(self, name: str, output_dir: Path, filename: str) -> Path:
        target = output_dir / f"{filename}.yml"
        self.conda("env", "export", "-n", name, "-f", str(target), check=True)
        return target

    def index(self, path: Path) -> CommandResult:
        return self.conda("index", str(path))

    def tool_versions(self) -> Dict[str, str]:
        versions: Dict[str, str] = {}
        probes = {"conda": ("--version",), "conda-build": ("build", "--version")}
        for tool, args in probes.items():
            result = self.conda(*args)
            if result.returncode == 0 and result.stdout.strip():
                versions[tool] = result.stdout.strip().split()[-1]
        return versions


class CondaInstaller:
    """Download and run a conda installer script into the install prefix."""

    def __init__(
        self,
        runner: CommandRunner,
        console: Console,
        *,
        prefix: Path,
        download_dir: Path,
        fresh_start: bool = False,
    ) -> None:
        self._runner = runner
        self._console = console
        self._prefix = prefix
        self._download_dir = download_dir
        self._fresh_start = fresh_start

    def download(self, url: str) -> Path:
        target = self._download_dir / url.rstrip("/").rsplit("/", 1)[-1]
        if target.exists():
            self._console.debug(f"Using cached installer {target}")
            return target
        if self._console.dry_run:
            self._console.dry(f"download {url} -> {target}")
            return target

        self._download_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        self._console.info(f"Downloading {url}")
        try:
            with urllib.request.urlopen(url) as response, partial.open("wb") as handle:
                shutil.copyfileobj(response, handle)
        except (urllib.error.URLError, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise SetupError(f"Unable to download conda installer from {url}: {exc}") from exc
        partial.replace(target)
        return target

    def install(self, url: str) -> Path:
        if self._prefix.exists():
            if not self._fresh_start:
                self._console.info(f"Conda is already installed at {self._prefix}")
                return self._prefix
            self._console.info(f"Removing existing conda installation at {self._prefix}")
            if not self._console.dry_run:
                shutil.rmtree(self._prefix)

        script = self.download(url)
        command: List[str] = ["bash", str(script), "-b", "-p", str(self._prefix)]
        self._console.debug(f"Executing: {format_command(command)}")
        try:
            self._runner.run(command, check=True, note="install conda")
        except (CommandError, SpawnError) as exc:
            raise SetupError(f"Conda installation failed: {exc}") from exc
        return self._prefix


__all__ = [
    "CondaDriver",
    "CondaInstaller",
    "HEADLESS_SETTINGS",
    "MAMBA_SUBCOMMANDS",
    "PackageRequirementUnmet",
    "REQUIRED_TOOLS",
    "SetupError",
]
