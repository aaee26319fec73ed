"""Utilities for executing external commands with optional dry-run support."""
from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Union
import shlex
import subprocess

Command = Union[Sequence[str], str]

SHELL_EXECUTABLE = "/bin/bash"


@dataclass(frozen=True)
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Command
    returncode: int
    stdout: str
    stderr: str
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(str(part)) for part in command)


class SpawnError(RuntimeError):
    """Raised when a child process could not be created at all."""

    def __init__(self, command: Command, cause: OSError):
        super().__init__(f"Unable to execute {format_command(command)}: {cause.strerror or cause}")
        self.command = command
        self.cause = cause


class CommandError(RuntimeError):
    """Raised when a checked command exits with a non-zero status."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {format_command(result.command)}"
        if result.stdout:
            message = f"{message}\nstdout: {result.stdout}"
        if result.stderr:
            message = f"{message}\nstderr: {result.stderr}"
        super().__init__(message)
        self.result = result


CommandFailed = CommandError


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Command,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
        note: str | None = None,
        shell: bool = False,
        merge_stderr: bool = False,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Command) -> str:
        return format_command(command)

    @staticmethod
    def _validate(command: Command, shell: bool) -> None:
        if isinstance(command, str) and not shell:
            raise TypeError("String commands require shell=True; pass an argument vector instead")
        if not isinstance(command, str) and shell:
            raise TypeError("shell=True requires the command as a single string")
        if not command:
            raise ValueError("Refusing to run an empty command")


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`."""

    def _finalize(self, result: CommandResult, *, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def run(
        self,
        command: Command,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
        note: str | None = None,
        shell: bool = False,
        merge_stderr: bool = False,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> CommandResult:
        self._validate(command, shell)
        # The child gets a private copy; later store writes are not shared.
        child_env: Dict[str, str] | None = dict(env) if env is not None else None

        with ExitStack() as stack:
            stdout_target = subprocess.PIPE
            stderr_target = subprocess.PIPE
            if stdout_path is not None:
                stdout_target = stack.enter_context(open(stdout_path, "wb"))
            if merge_stderr:
                stderr_target = subprocess.STDOUT
            elif stderr_path is not None:
                stderr_target = stack.enter_context(open(stderr_path, "wb"))

            try:
                process = subprocess.run(
                    command,
                    cwd=str(cwd) if cwd else None,
                    env=child_env,
                    shell=shell,
                    executable=SHELL_EXECUTABLE if shell else None,
                    stdout=stdout_target,
                    stderr=stderr_target,
                    check=False,
                )
            except OSError as exc:
                raise SpawnError(command, exc) from exc

        return self._finalize(
            CommandResult(
                command=command if isinstance(command, str) else list(command),
                returncode=process.returncode,
                stdout=_decode(process.stdout),
                stderr=_decode(process.stderr),
                stdout_path=stdout_path,
                stderr_path=None if merge_stderr else stderr_path,
            ),
            check=check,
        )


def _decode(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


@dataclass(slots=True)
class RecordedCommand:
    command: Command
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    shell: bool


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []

    def run(
        self,
        command: Command,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = False,
        note: str | None = None,
        shell: bool = False,
        merge_stderr: bool = False,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> CommandResult:
        self._validate(command, shell)
        recorded = command if isinstance(command, str) else list(command)
        self.commands.append(
            RecordedCommand(
                command=recorded,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env else {},
                note=note,
                shell=shell,
            )
        )
        if stdout_path is not None:
            Path(stdout_path).write_bytes(b"")
        return CommandResult(command=recorded, returncode=0, stdout="", stderr="", stdout_path=stdout_path)

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        for record in self.commands:
            cmd = self.format_command(record.command)
            cwd = record.cwd or default_cwd
            parts: List[str] = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(cmd)
            yield " ".join(parts)


__all__ = [
    "Command",
    "CommandError",
    "CommandFailed",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SpawnError",
    "SubprocessCommandRunner",
    "format_command",
]
