"""Capture the environment of an activated conda environment.

Conda's activation logic is itself a shell script, so it is executed for real
in a disposable ``bash`` subshell. The subshell ends with ``env -0`` and its
output lands in a temporary file; the NUL-delimited dump is then parsed back
into ``(key, value)`` pairs and merged into the :class:`EnvironmentStore`.
NUL delimiters are required because values may contain newlines.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, List, Tuple
import io
import os
import shlex
import tempfile

from core.command_runner import CommandRunner

from .console import Console
from .environment import EnvironmentStore

CONDA_INIT_SCRIPT = Path("etc/profile.d/conda.sh")
MAMBA_INIT_SCRIPT = Path("etc/profile.d/mamba.sh")
TEMPFILE_PREFIX = "shell_"
RECORD_SEPARATOR = b"\0"


class ActivationUnavailable(RuntimeError):
    """Raised when the conda/mamba init scripts are missing."""

    def __init__(self, missing: Path):
        super().__init__(f"Activation script not found: {missing}")
        self.missing = missing


class ActivationFailed(RuntimeError):
    """Raised when the activation subshell exits non-zero."""

    def __init__(self, env_name: str, returncode: int):
        super().__init__(f"Unable to activate conda environment '{env_name}' (exit code {returncode})")
        self.env_name = env_name
        self.returncode = returncode


@dataclass(frozen=True)
class MalformedEnvironmentRecord:
    """A dump record that could not be applied; reported, never fatal."""

    raw: str
    reason: str

    def describe(self) -> str:
        return f"Invalid environment variable {self.reason} ignored: '{self.raw}'"


class NulRecordReader:
    """Split a binary stream into NUL-terminated records.

    The reader keeps one piece of state, the bytes accumulated since the last
    separator. Each chunk either extends that buffer or completes a record,
    which is yielded and the buffer reset. A trailing record without a
    terminating NUL is yielded at end of stream.
    """

    def __init__(self, stream: BinaryIO, *, chunk_size: int = 8192) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._stream = stream
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        pending = bytearray()
        while True:
            chunk = self._stream.read(self._chunk_size)
            if not chunk:
                break
            start = 0
            while True:
                end = chunk.find(RECORD_SEPARATOR, start)
                if end < 0:
                    pending += chunk[start:]
                    break
                pending += chunk[start:end]
                yield bytes(pending)
                pending.clear()
                start = end + 1
        if pending:
            yield bytes(pending)


class EnvironmentDump:
    """Restartable lazy sequence of ``(key, value)`` pairs from an ``env -0`` dump.

    ``source`` is either the raw bytes or a path to a file holding them. Each
    iteration re-reads the source from the start. Records are split on the
    first ``=`` only. Empty records are skipped silently; records with an
    empty key or without ``=`` are collected in :attr:`malformed` for the most
    recent iteration.
    """

    def __init__(self, source: bytes | Path, *, chunk_size: int = 8192) -> None:
        self._source = source
        self._chunk_size = chunk_size
        self.malformed: List[MalformedEnvironmentRecord] = []

    def _open(self) -> BinaryIO:
        if isinstance(self._source, (bytes, bytearray)):
            return io.BytesIO(self._source)
        return open(self._source, "rb")

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        self.malformed = []
        with self._open() as stream:
            for raw in NulRecordReader(stream, chunk_size=self._chunk_size):
                if not raw:
                    continue
                text = raw.decode("utf-8", errors="surrogateescape")
                key, sep, value = text.partition("=")
                if not sep:
                    self.malformed.append(MalformedEnvironmentRecord(raw=text, reason="value"))
                    continue
                if not key:
                    self.malformed.append(MalformedEnvironmentRecord(raw=text, reason="key"))
                    continue
                yield key, value


@dataclass(slots=True)
class ActivationReport:
    env_name: str
    applied: int = 0
    malformed: List[MalformedEnvironmentRecord] = field(default_factory=list)


class EnvironmentActivator:
    """Merge the variables of an activated conda environment into a store."""

    def __init__(
        self,
        runner: CommandRunner,
        console: Console,
        environment: EnvironmentStore,
        *,
        tmpdir: Path,
    ) -> None:
        self._runner = runner
        self._console = console
        self._environment = environment
        self._tmpdir = tmpdir

    def init_scripts(self, root: Path) -> tuple[Path, Path]:
        return (root / CONDA_INIT_SCRIPT, root / MAMBA_INIT_SCRIPT)

    def build_command(self, root: Path, env_name: str) -> str:
        conda_sh, mamba_sh = self.init_scripts(root)
        return (
            f"source {shlex.quote(str(conda_sh))}; "
            f"source {shlex.quote(str(mamba_sh))}; "
            f"conda activate {shlex.quote(env_name)} &>/dev/null; "
            "env -0"
        )

    def activate(self, root: Path, env_name: str) -> ActivationReport:
        for script in self.init_scripts(root):
            if not script.exists():
                raise ActivationUnavailable(script)

        self._tmpdir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=TEMPFILE_PREFIX, dir=self._tmpdir)
        os.close(fd)
        capture = Path(name)

        report = ActivationReport(env_name=env_name)
        try:
            self._console.debug(f"Activating conda environment '{env_name}' from {root}")
            result = self._runner.run(
                self.build_command(root, env_name),
                shell=True,
                env=self._environment.snapshot(),
                stdout_path=capture,
                note=f"activate {env_name}",
            )
            if result.returncode != 0:
                raise ActivationFailed(env_name, result.returncode)

            dump = EnvironmentDump(capture)
            report.applied = self._environment.update_from(dump)
            report.malformed = list(dump.malformed)
        finally:
            capture.unlink(missing_ok=True)

        for record in report.malformed:
            self._console.warn(record.describe())
        self._console.debug(
            f"Applied {report.applied} variables from '{env_name}' ({len(report.malformed)} malformed)"
        )
        return report


__all__ = [
    "ActivationFailed",
    "ActivationReport",
    "ActivationUnavailable",
    "EnvironmentActivator",
    "EnvironmentDump",
    "MalformedEnvironmentRecord",
    "NulRecordReader",
]
