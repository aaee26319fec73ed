"""Command line interface for building deliveries."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable
import configparser
import sys

import yaml

from core.command_runner import CommandError, RecordingCommandRunner, SpawnError, SubprocessCommandRunner
from core.template import TemplateError

from .activation import ActivationFailed, ActivationUnavailable
from .conda import PackageRequirementUnmet, SetupError
from .config import DeliveryDefinition, GlobalSettings
from .console import Console
from .context import DeliveryContext
from .installer import DeliveryAborted
from .runner import DeliveryRunner

# Exit status when continue-on-error let the run finish with failed phases.
EXIT_PHASE_FAILURES = 2

FATAL_ERRORS = (
    ActivationFailed,
    ActivationUnavailable,
    CommandError,
    DeliveryAborted,
    configparser.Error,
    yaml.YAMLError,
    OSError,
    PackageRequirementUnmet,
    SetupError,
    SpawnError,
    TemplateError,
    TypeError,
    ValueError,
)


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    common = ArgumentParser(add_help=False)
    common.add_argument(
        "--log",
        "-l",
        choices=list(Console.LEVELS),
        default=None,
        help="Set log level (default: info, or debug with --verbose)",
    )
    common.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    common.add_argument("--config", type=Path, default=None, help="Global settings file (default: $DELIVERY_CONFIG)")
    common.add_argument("--root", type=Path, default=None, help="Working directory for the delivery (default: cwd)")

    parser = ArgumentParser(prog="deliver", description="Build conda delivery environments")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", parents=[common], help="Build, install and export a delivery")
    build_parser.add_argument("definition", type=Path, help="Delivery definition file")
    build_parser.add_argument(
        "--continue-on-error",
        "-C",
        action="store_true",
        help="Record failed install/build phases and keep going",
    )
    build_parser.add_argument("--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--tmpdir", type=Path, default=None, help="Directory for temporary files")
    build_parser.add_argument("--no-publish", action="store_true", help="Do not stage or upload built artifacts")

    show_parser = subparsers.add_parser("show", parents=[common], help="Show the resolved delivery definition")
    show_parser.add_argument("definition", type=Path, help="Delivery definition file")

    return parser.parse_args(list(argv))


def _make_console(args: Namespace, settings: GlobalSettings, *, dry_run: bool = False) -> Console:
    if args.log:
        level = args.log
    else:
        level = "debug" if args.verbose or settings.verbose else "info"
    return Console(level=level, dry_run=dry_run)


def _load(args: Namespace) -> tuple[GlobalSettings, DeliveryDefinition]:
    settings = GlobalSettings.load(args.config)
    definition = DeliveryDefinition.load(args.definition)
    return settings, definition


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    try:
        if args.command == "build":
            return _handle_build(args)
        if args.command == "show":
            return _handle_show(args)
    except FATAL_ERRORS as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    raise ValueError(f"Unknown command: {args.command}")


def _handle_build(args: Namespace) -> int:
    settings, definition = _load(args)
    settings = settings.override(
        continue_on_error=True if args.continue_on_error else None,
        verbose=True if args.verbose else None,
        tmpdir=args.tmpdir,
    )
    console = _make_console(args, settings, dry_run=args.dry_run)
    context = DeliveryContext.create(definition, settings, root=args.root or Path.cwd())

    runner: SubprocessCommandRunner | RecordingCommandRunner
    if args.dry_run:
        runner = RecordingCommandRunner()
    else:
        runner = SubprocessCommandRunner()

    result = DeliveryRunner(context, runner, console, publish=not args.no_publish).run()

    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        for line in runner.iter_formatted(workspace=context.storage.root):
            print(line)
    if console.warnings:
        console.info(f"{console.warnings} warning(s) were reported")
    return 0 if result.ok else EXIT_PHASE_FAILURES


def _handle_show(args: Namespace) -> int:
    settings, definition = _load(args)
    console = _make_console(args, settings)
    context = DeliveryContext.create(definition, settings, root=args.root or Path.cwd())

    sections = (
        ("Meta", context.describe_meta()),
        ("Conda", context.describe_conda()),
        ("Tests", context.describe_tests()),
        ("Runtime", context.describe_runtime()),
    )
    for title, lines in sections:
        console.section(title)
        for line in lines:
            print(f"  {line}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
