"""split-runner CLI: run a test target split across docker workers.

Commands:
    run: Launch workers for a target and selection, wait, collect results.
    plan: Show the worker count and inner splits a run would use.
    categories: List the job category table.

The ``run`` exit status is the run's overall exit code: 0 when every
worker succeeded, otherwise the first failing worker's code. Preflight
errors exit 1 before any container is created.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from . import __version__
from .aggregate import write_run_result
from .config import WORKERS_ENV_VAR, load_category_table, load_run_settings
from .errors import SplitRunnerError
from .orchestrator import DEFAULT_PYTHON_VERSION, OrchestratorRequest, plan_run, run_partitioned
from .resources import detect_host_budget, detect_tenancy_factor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the split-runner CLI."""
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("target", help="Test target, e.g. test, jvm-dtest, dtest")
    shared.add_argument(
        "split",
        nargs="?",
        default=None,
        help="Split chunk K/N (default 1/1) or a test name pattern",
    )
    shared.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Override the worker count (also {WORKERS_ENV_VAR})",
    )
    shared.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Category table YAML (default: packaged table)",
    )
    shared.add_argument("--json", type=Path, default=None, help="Write a JSON summary here")
    shared.add_argument("-v", "--verbose", action="count", default=argparse.SUPPRESS)

    parser = argparse.ArgumentParser(
        prog="split-runner",
        description="Run a test target split across isolated docker workers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a target across workers", parents=[shared])
    run.add_argument("--java", default=None, help="JDK version (default: build.xml java.default)")
    run.add_argument("--python", default=DEFAULT_PYTHON_VERSION, help="Python version in workers")
    run.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Source checkout (default: CASSANDRA_DIR or the current directory)",
    )
    run.add_argument(
        "--no-compress-logs",
        action="store_true",
        help="Leave worker logs uncompressed",
    )

    subparsers.add_parser("plan", help="Show how a run would be split", parents=[shared])

    categories = subparsers.add_parser("categories", help="List job categories")
    categories.add_argument("--config", type=Path, default=None)
    categories.add_argument("-v", "--verbose", action="count", default=argparse.SUPPRESS)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the split-runner CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if args.command == "run":
            return _cmd_run(args)
        elif args.command == "plan":
            return _cmd_plan(args)
        elif args.command == "categories":
            return _cmd_categories(args)
        else:
            parser.error(f"Unknown command: {args.command}")
            return 2
    except (SplitRunnerError, OSError) as e:
        sys.stderr.write(f"Error: {e}\n")
        return 1
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        return 130


# =============================================================================
# Command Handlers
# =============================================================================


def _raise_system_exit(signum: int, frame: Any) -> None:
    raise SystemExit(128 + signum)


def _cmd_run(args: argparse.Namespace) -> int:
    """Handle run command."""
    settings = load_run_settings(
        project_dir=args.project_dir,
        worker_count_override=args.workers,
        compress_logs=not args.no_compress_logs,
    )
    table = load_category_table(args.config)
    request = OrchestratorRequest(
        target=args.target,
        selection=args.split,
        version=args.java,
        python_version=args.python,
    )

    # SIGTERM unwinds like an exception so running workers are torn down
    previous = signal.signal(signal.SIGTERM, _raise_system_exit)
    try:
        result = run_partitioned(request, settings, table=table)
    finally:
        signal.signal(signal.SIGTERM, previous)

    if args.json:
        write_run_result(result, args.json)
    return result.overall_exit_code


def _cmd_plan(args: argparse.Namespace) -> int:
    """Handle plan command."""
    settings = load_run_settings(worker_count_override=args.workers)
    table = load_category_table(args.config)
    budget = detect_host_budget(detect_tenancy_factor())
    plan = plan_run(
        OrchestratorRequest(target=args.target, selection=args.split),
        table,
        budget,
        worker_count_override=settings.worker_count_override,
    )

    payload = plan.to_dict()
    if args.json:
        args.json.parent.mkdir(parents=True, exist_ok=True)
        args.json.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    print(f"Target:    {plan.target} ({plan.category.name})")
    print(f"Selection: {plan.selection}")
    print(
        f"Host:      {budget.cpu_count} cores, {budget.memory_bytes} bytes, "
        f"tenancy {budget.tenancy_factor}"
    )
    print(f"Workers:   {plan.worker_count} (estimated {plan.estimated_workers})")
    print(f"Limits:    memory {plan.category.container_memory_flag}, cpus {plan.cpus or 'uncapped'}")
    for split in plan.splits:
        print(f"  {split}")
    return 0


def _cmd_categories(args: argparse.Namespace) -> int:
    """Handle categories command."""
    table = load_category_table(args.config)
    for name, category in table.categories.items():
        flags = []
        if category.splittable:
            flags.append("splittable")
        if not category.cpu_capped:
            flags.append("uncapped-cpu")
        if category.requires_dtest_dir:
            flags.append("dtest-dir")
        print(f"{name}: memory {category.container_memory_flag} {' '.join(flags)}".rstrip())
        print(f"  {' '.join(table.targets_for(name))}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
