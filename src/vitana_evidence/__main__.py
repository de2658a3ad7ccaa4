"""
Vitana Evidence Engine CLI

VTID: VTID-01204

Command-line interface for the evidence engine.

Exit codes:
    0  every task passed
    1  at least one task failed (or dry run / nothing run)
    2  specification, registration or evidence-write error
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__, __vtid__
from .errors import EvidenceWriteError, RegistrationError, SpecificationError
from .logging_config import setup_logging
from .main import EngineConfig
from .orchestrator import ExecutionEngine
from .output.console import ConsoleFormatter, OutputLevel, print_banner
from .registry import PluginRegistry

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="vitana-evidence",
        description="Vitana Evidence Engine - execute verification specifications and record evidence",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__} ({__vtid__})",
    )
    parser.add_argument(
        "spec",
        nargs="?",
        help="Specification document (.json, .yaml, .yml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the document and resolve action types without executing",
    )
    parser.add_argument(
        "--stop-on-failure",
        action="store_true",
        help="Skip remaining tasks after the first failed task",
    )
    parser.add_argument(
        "--list-plugins",
        action="store_true",
        help="List registered action types and exit",
    )
    parser.add_argument(
        "--plugin-dir",
        action="append",
        dest="plugin_dirs",
        default=[],
        help="Additional executor plugin directory (repeatable)",
    )
    parser.add_argument(
        "--evidence-dir",
        help="Override the document's evidence directory",
    )

    # Global options
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="Increase verbosity",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Quiet mode",
    )
    parser.add_argument(
        "--log-file",
        help="Log to file",
    )
    parser.add_argument(
        "--config",
        help="Engine config file path (YAML)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    args = parser.parse_args(argv)
    if not args.spec and not args.list_plugins:
        parser.error("a specification path is required unless --list-plugins is given")
    return args


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Config file (or environment), then command-line flags on top"""
    if args.config and Path(args.config).exists():
        config = EngineConfig.from_yaml(args.config)
    else:
        config = EngineConfig.from_env()

    config.verbose = config.verbose or args.verbose > 0
    config.dry_run = config.dry_run or args.dry_run
    config.stop_on_failure = config.stop_on_failure or args.stop_on_failure
    config.plugin_dirs = list(config.plugin_dirs) + [Path(p) for p in args.plugin_dirs]
    if args.evidence_dir:
        config.evidence_dir_override = Path(args.evidence_dir)
    return config


def list_plugins(config: EngineConfig, formatter: ConsoleFormatter) -> int:
    registry = PluginRegistry(config.plugin_dirs).load_all()
    formatter.plugin_list(registry.describe())
    for path, error in registry.load_errors.items():
        print(f"Failed to load {path}: {error}", file=sys.stderr)
    return EXIT_OK


async def run_specification(
    args: argparse.Namespace,
    config: EngineConfig,
    formatter: ConsoleFormatter,
) -> int:
    """Execute a specification"""
    engine = ExecutionEngine(config=config)

    def on_task_started(event: str, task, **kwargs):
        formatter.task_started(task)

    def on_action_completed(event: str, result, **kwargs):
        formatter.action_completed(result)

    def on_task_completed(event: str, task, **kwargs):
        formatter.task_completed(task)

    engine.on("task.started", on_task_started)
    engine.on("action.completed", on_action_completed)
    engine.on("task.completed", on_task_completed)

    report = await engine.run_file(Path(args.spec))

    if report.dry_run:
        for task in report.tasks.values():
            formatter.task_completed(task)
    formatter.summary(report)

    if report.dry_run:
        return EXIT_FAILED if report.unknown_action_types else EXIT_OK
    return EXIT_OK if report.success else EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    log_level = "DEBUG" if args.verbose >= 2 else ("INFO" if args.verbose >= 1 else "WARNING")
    if args.quiet:
        log_level = "ERROR"

    setup_logging(
        level=log_level,
        log_file=args.log_file,
        use_colors=not args.no_color,
    )

    output_level = OutputLevel.DEBUG if args.verbose >= 2 else (
        OutputLevel.VERBOSE if args.verbose >= 1 else (
            OutputLevel.QUIET if args.quiet else OutputLevel.NORMAL
        )
    )
    formatter = ConsoleFormatter(level=output_level, use_colors=not args.no_color)

    try:
        config = build_config(args)

        if args.list_plugins:
            return list_plugins(config, formatter)

        if not args.quiet:
            print_banner(__version__, __vtid__)

        return asyncio.run(run_specification(args, config, formatter))

    except SpecificationError as e:
        print(f"Specification error: {e}", file=sys.stderr)
        return EXIT_FATAL
    except RegistrationError as e:
        print(f"Plugin registration error: {e}", file=sys.stderr)
        return EXIT_FATAL
    except EvidenceWriteError as e:
        print(f"Evidence write error: {e}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
