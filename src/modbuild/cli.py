"""
Command-line interface for modbuild.

This module provides the `modbuild` CLI tool for module-aware incremental
C++ builds.
"""

import argparse
import json
import logging
import sys
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from rich.console import Console

from modbuild import __version__
from modbuild.build.graph_builder import MixedModePolicy
from modbuild.build.orchestrator import BuildOrchestrator
from modbuild.commands.purge import purge_cache
from modbuild.config.manifest import ManifestError, ProjectManifest, get_cache_dir, load_manifest
from modbuild.output import (
    TimedLogger,
    init_timer,
    log,
    log_build_complete,
    log_counts,
    log_detail,
    log_error,
    log_header,
    log_instance,
    log_warning,
    set_verbose,
)
from modbuild.pipeline import NullCallback, PipelineProgressDisplay, VerboseCallback, is_tty

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

EXIT_INTERRUPTED = 130
EXIT_CONFIG_ERROR = 2


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    project_dir: Path
    variants: list[str] = field(default_factory=list)
    jobs: Optional[int] = None
    stop_on_failure: bool = False
    retry_failed: bool = False
    mixed_mode: Optional[str] = None
    json: bool = False
    no_tui: bool = False
    verbose: bool = False


@dataclass
class PlanArgs:
    """Arguments for the plan command."""

    project_dir: Path
    variants: list[str] = field(default_factory=list)
    mixed_mode: Optional[str] = None
    json: bool = False
    verbose: bool = False


@dataclass
class GraphArgs:
    """Arguments for the graph command."""

    project_dir: Path
    variants: list[str] = field(default_factory=list)
    mixed_mode: Optional[str] = None
    verbose: bool = False


@dataclass
class PurgeArgs:
    """Arguments for the purge command."""

    project_dir: Path
    dry_run: bool = False
    verbose: bool = False


def setup_logging(verbose: bool) -> None:
    """Route library logging to stderr; DEBUG when verbose, WARNING otherwise."""
    logger = logging.getLogger("modbuild")
    for handler in list(logger.handlers):
        if getattr(handler, "_modbuild_cli", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    handler._modbuild_cli = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load(project_dir: Path, mixed_mode: Optional[str] = None) -> ProjectManifest:
    manifest = load_manifest(project_dir)
    if mixed_mode:
        manifest.mixed_mode = MixedModePolicy(mixed_mode)
    return manifest


def _fail_unexpected(e: Exception, verbose: bool) -> None:
    log_error(f"Unexpected error: {type(e).__name__}: {e}")
    if verbose:
        print(traceback.format_exc(), file=sys.stderr)
    sys.exit(1)


def build_command(args: BuildArgs) -> None:
    """Build every instance of the project.

    Examples:
        modbuild build                       # Build the current project
        modbuild build demo -j 8             # Build 'demo' with 8 workers
        modbuild build --variant debug       # Build only the debug variant
        modbuild build --stop-on-failure     # Cancel pending work after a failure
    """
    try:
        manifest = _load(args.project_dir, args.mixed_mode)
        orchestrator = BuildOrchestrator(manifest)

        if args.json:
            report = orchestrator.build(args.variants or None, jobs=args.jobs, stop_on_failure=args.stop_on_failure or None, retry_failed=args.retry_failed)
            print(report.to_json())
            sys.exit(report.exit_code)

        log_header("modbuild", __version__)
        log(f"Building project: {manifest.name}")
        log_detail(f"Cache: {manifest.cache_dir}", verbose_only=True)

        if is_tty() and not args.no_tui:
            display = PipelineProgressDisplay(console=None, project_name=manifest.name, verbose=args.verbose)
            with display:
                report = orchestrator.build(
                    args.variants or None, jobs=args.jobs, stop_on_failure=args.stop_on_failure or None, retry_failed=args.retry_failed, callback=display
                )
        else:
            callback = VerboseCallback() if args.verbose else NullCallback()
            report = orchestrator.build(
                args.variants or None, jobs=args.jobs, stop_on_failure=args.stop_on_failure or None, retry_failed=args.retry_failed, callback=callback
            )

        report.render(Console())
        log_counts(report.counts)
        log_build_complete(report.elapsed)
        sys.exit(report.exit_code)

    except ManifestError as e:
        log_error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        log_warning("Build interrupted")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail_unexpected(e, args.verbose)


def plan_command(args: PlanArgs) -> None:
    """Show which instances would build and why, without building."""
    try:
        manifest = _load(args.project_dir, args.mixed_mode)
        analysis, plan = BuildOrchestrator(manifest).plan(args.variants or None)

        if args.json:
            data = plan.to_dict()
            data["errors"] = [e.to_dict() for e in analysis.errors.get_errors()]
            data["unbuildable"] = [u.to_dict() for u in analysis.resolved.unbuildable]
            print(json.dumps(data, indent=2))
            sys.exit(0)

        with TimedLogger("Planning", phase=(1, 1)) as timed:
            timed.detail(f"{len(analysis.resolved.instances)} instances, {len(plan.must_build)} to build")
        for instance in analysis.resolved.instances:
            log_instance(plan.reasons[instance.instance_id].value, instance.instance_id, verbose_only=False)
        for entry in analysis.resolved.unbuildable:
            log_instance(entry.phase.value, f"{entry.label}: {entry.reason}", verbose_only=False)
        for instance_id in plan.removed:
            log_instance("removed", instance_id, verbose_only=False)
        for error in analysis.errors.get_errors():
            log_error(f"{error.phase.value}: {error.message}")
        for message in plan.cache_errors:
            log_warning(f"cache: {message}")
        sys.exit(0)

    except ManifestError as e:
        log_error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail_unexpected(e, args.verbose)


def graph_command(args: GraphArgs) -> None:
    """Print every build instance with its dependencies and key."""
    try:
        manifest = _load(args.project_dir, args.mixed_mode)
        analysis = BuildOrchestrator(manifest).analyze(args.variants or None)

        for instance in analysis.resolved.instances:
            log(f"{instance.instance_id} [{instance.key[:12]}] {instance.variant.describe()}")
            for dep in instance.dependencies:
                log_detail(f"-> {dep}")
        for entry in analysis.resolved.unbuildable:
            log(f"{entry.label} [{entry.phase.value}] {entry.reason}")
        for error in analysis.errors.get_errors():
            log_error(f"{error.phase.value}: {error.message}")
        sys.exit(1 if analysis.errors.has_errors() else 0)

    except ManifestError as e:
        log_error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail_unexpected(e, args.verbose)


def purge_command(args: PurgeArgs) -> None:
    """Delete cached artifacts for the project."""
    try:
        try:
            cache_dir = load_manifest(args.project_dir).cache_dir
        except ManifestError:
            cache_dir = get_cache_dir(args.project_dir.resolve())
        sys.exit(0 if purge_cache(cache_dir, args.dry_run) else 1)
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _fail_unexpected(e, args.verbose)


def _add_project_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "project_dir",
        nargs="?",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def _add_variant(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--variant",
        dest="variants",
        action="append",
        default=[],
        metavar="NAME",
        help="Variant to build (repeatable; default: the manifest's variants)",
    )


def _add_mixed_mode(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mixed-mode",
        choices=[p.value for p in MixedModePolicy],
        default=None,
        help="Mixed import/include strictness (default: the manifest's mixed_mode)",
    )


def _positive_int(value: str) -> int:
    jobs = int(value)
    if jobs < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {jobs}")
    return jobs


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modbuild",
        description="modbuild - Module-aware incremental build orchestrator",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"modbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    build_parser = subparsers.add_parser("build", help="Build all instances of the project")
    _add_project_dir(build_parser)
    _add_variant(build_parser)
    build_parser.add_argument("-j", "--jobs", type=_positive_int, default=None, help="Parallel build steps (default: manifest or CPU count)")
    build_parser.add_argument("--stop-on-failure", action="store_true", help="Cancel not-yet-started instances after the first failure")
    build_parser.add_argument("--retry-failed", action="store_true", help="Rebuild instances whose cached outcome is a failure")
    _add_mixed_mode(build_parser)
    build_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    build_parser.add_argument("--no-tui", action="store_true", help="Disable the live progress display")

    plan_parser = subparsers.add_parser("plan", help="Show what would be built and why")
    _add_project_dir(plan_parser)
    _add_variant(plan_parser)
    _add_mixed_mode(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    graph_parser = subparsers.add_parser("graph", help="Print the resolved build graph")
    _add_project_dir(graph_parser)
    _add_variant(graph_parser)
    _add_mixed_mode(graph_parser)

    purge_parser = subparsers.add_parser("purge", help="Delete cached artifacts")
    _add_project_dir(purge_parser)
    purge_parser.add_argument("--dry-run", action="store_true", help="Show what would be deleted without deleting")

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """modbuild - Module-aware incremental build orchestrator."""
    parser = create_parser()
    parsed_args = parser.parse_args(argv)

    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    if not parsed_args.project_dir.exists():
        log_error(f"Path does not exist: {parsed_args.project_dir}")
        sys.exit(EXIT_CONFIG_ERROR)
    if not parsed_args.project_dir.is_dir():
        log_error(f"Path is not a directory: {parsed_args.project_dir}")
        sys.exit(EXIT_CONFIG_ERROR)

    init_timer(sys.stdout)
    set_verbose(parsed_args.verbose)
    setup_logging(parsed_args.verbose)

    if parsed_args.command == "build":
        build_command(
            BuildArgs(
                project_dir=parsed_args.project_dir,
                variants=parsed_args.variants,
                jobs=parsed_args.jobs,
                stop_on_failure=parsed_args.stop_on_failure,
                retry_failed=parsed_args.retry_failed,
                mixed_mode=parsed_args.mixed_mode,
                json=parsed_args.json,
                no_tui=parsed_args.no_tui,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "plan":
        plan_command(
            PlanArgs(
                project_dir=parsed_args.project_dir,
                variants=parsed_args.variants,
                mixed_mode=parsed_args.mixed_mode,
                json=parsed_args.json,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "graph":
        graph_command(
            GraphArgs(
                project_dir=parsed_args.project_dir,
                variants=parsed_args.variants,
                mixed_mode=parsed_args.mixed_mode,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "purge":
        purge_command(PurgeArgs(project_dir=parsed_args.project_dir, dry_run=parsed_args.dry_run, verbose=parsed_args.verbose))


if __name__ == "__main__":
    main()
