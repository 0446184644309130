"""Command-line interface for relmatrix.

This module provides the ``relmatrix`` command: running the whole release
matrix locally, running a single cell (what one CI job does), printing the
derived run environment and classifying target identifiers.
"""

from __future__ import annotations

import argparse
import json
import os
import pathlib
import sys
from typing import Any, Dict, List, Optional

from relmatrix.__version__ import __version__
from relmatrix.build.environment import derive_environment, load_metadata, load_metadata_file
from relmatrix.build.toolchain import classify_target
from relmatrix.build.utils import CommandRunner
from relmatrix.core.config_manager import ConfigManager
from relmatrix.core.logging_manager import LoggingManager, get_logger
from relmatrix.core.orchestrator import CellRunner, MatrixRunner, RunReport
from relmatrix.release.store import create_store
from relmatrix.utils.exceptions import ConfigurationError, RelmatrixError, UnsupportedTargetError

EXIT_OK = 0
EXIT_CELL_FAILED = 1
EXIT_ERROR = 2


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load configuration, applying command-line overrides.

    Args:
        args: Command-line arguments

    Returns:
        Initialized configuration manager
    """
    overrides: Dict[str, Any] = {}
    if getattr(args, "project_dir", None):
        overrides["project.directory"] = args.project_dir
    if getattr(args, "dry_run", False):
        overrides["publish.backend"] = "memory"
    if getattr(args, "debug", False):
        overrides["logging.level"] = "DEBUG"
        overrides["logging.console.level"] = "DEBUG"

    config_manager = ConfigManager(config_path=args.config, overrides=overrides)
    config_manager.initialize()
    return config_manager


def resolve_commit(args: argparse.Namespace) -> str:
    commit = args.commit or os.environ.get("GITHUB_SHA")
    if not commit:
        raise ConfigurationError("No commit given; pass --commit or set GITHUB_SHA", config_key="commit")
    return commit


def make_metadata_loader(args: argparse.Namespace, project_dir: pathlib.Path, runner: CommandRunner):
    if args.metadata:
        return lambda: load_metadata_file(args.metadata)
    return lambda: load_metadata(project_dir, runner)


def print_report(report: RunReport) -> None:
    print(f"Release {report.tag} (version {report.version})")
    for cell in report.cells:
        line = f"  {cell.target.display_name:<12} {cell.status.value}"
        if cell.error:
            line += f": {cell.error}"
        print(line)
        for record in cell.records:
            print(f"    {record.asset_name}: {record.status.value}")


def run_command(args: argparse.Namespace, only: Optional[List[str]] = None) -> int:
    """Handle the run and cell commands.

    Args:
        args: Command-line arguments
        only: Targets to run, all targets if empty

    Returns:
        Exit code (0 if every cell succeeded)
    """
    config_manager = load_config(args)
    logging_manager = LoggingManager(config_manager)
    logging_manager.initialize()
    logger = get_logger("relmatrix.cli")

    settings = config_manager.settings
    project_dir = pathlib.Path(settings.project.directory)
    runner = CommandRunner(logger=get_logger("relmatrix.command"))
    store = None

    try:
        store = create_store(settings.publish)
        cell_runner = CellRunner(
            settings,
            commit=resolve_commit(args),
            metadata_loader=make_metadata_loader(args, project_dir, runner),
            store=store,
            project_dir=project_dir,
            runner=runner,
            logger=get_logger("relmatrix.cell"),
        )
        report = MatrixRunner(settings, cell_runner, logger=logger).run(only=only)
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()
        logging_manager.shutdown()

    print_report(report)
    if args.report:
        pathlib.Path(args.report).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    return EXIT_OK if report.succeeded else EXIT_CELL_FAILED


def env_command(args: argparse.Namespace) -> int:
    """Print the derived run environment as ``KEY=value`` lines."""
    config_manager = load_config(args)
    settings = config_manager.settings
    project_dir = pathlib.Path(settings.project.directory)
    runner = CommandRunner(logger=get_logger("relmatrix.command"))

    env = derive_environment(
        resolve_commit(args),
        make_metadata_loader(args, project_dir, runner)(),
        settings.project.metadata_package,
        static_link=settings.build.static_link,
    )
    lines = env.as_env_lines()
    for line in lines:
        print(line)

    if args.append_to:
        with open(args.append_to, "a", encoding="utf-8") as f:
            f.write("".join(f"{line}\n" for line in lines))
    return EXIT_OK


def classify_command(args: argparse.Namespace) -> int:
    """Print the platform kind of each target identifier."""
    exit_code = EXIT_OK
    for platform_id in args.targets:
        try:
            print(f"{platform_id}\t{classify_target(platform_id).value}")
        except UnsupportedTargetError as e:
            print(f"{platform_id}\t{e}", file=sys.stderr)
            exit_code = EXIT_ERROR
    return exit_code


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--commit", help="Triggering commit hash (default: $GITHUB_SHA)")
    parser.add_argument("--project-dir", help="Project checkout (default: project.directory)")
    parser.add_argument("--metadata", help="Saved project metadata JSON instead of running cargo metadata")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relmatrix",
        description="Build, package and publish a binary for every target of a release matrix",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to configuration file (default: relmatrix.yaml if present)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    run_parser = subparsers.add_parser("run", help="Run every cell of the matrix")
    _add_run_options(run_parser)
    run_parser.add_argument("--dry-run", action="store_true", help="Publish to an in-memory store")
    run_parser.add_argument("--report", help="Write a JSON run report to this file")

    cell_parser = subparsers.add_parser("cell", help="Run a single matrix cell")
    cell_parser.add_argument("--target", required=True, help="Target identifier or display name")
    _add_run_options(cell_parser)
    cell_parser.add_argument("--dry-run", action="store_true", help="Publish to an in-memory store")
    cell_parser.add_argument("--report", help="Write a JSON run report to this file")

    env_parser = subparsers.add_parser("env", help="Print the derived run environment")
    _add_run_options(env_parser)
    env_parser.add_argument("--append-to", help="Also append the lines to this file (e.g. $GITHUB_ENV)")

    classify_parser = subparsers.add_parser("classify", help="Classify target identifiers")
    classify_parser.add_argument("targets", nargs="+", help="Target identifiers")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface.

    Args:
        argv: Command-line arguments

    Returns:
        Exit code (0 for success, 1 if a cell failed, 2 for errors that stop the run)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    try:
        if args.command == "run":
            return run_command(args)
        if args.command == "cell":
            return run_command(args, only=[args.target])
        if args.command == "env":
            return env_command(args)
        if args.command == "classify":
            return classify_command(args)
    except RelmatrixError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    parser.print_help()
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
