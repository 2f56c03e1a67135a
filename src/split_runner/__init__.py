"""split-runner: run a test target split across isolated docker workers.

A caller picks a target and an outer split chunk ``K/N``; split-runner sizes
the number of concurrent workers to the host, subdivides the chunk into one
contiguous inner split per worker, runs each in its own memory- and
CPU-capped container, streams their output, and folds their exit codes
into one.

Public API
----------
- :func:`run_partitioned` - Run a target end to end and return a RunResult
- :func:`plan_run` - Preflight only: worker count and inner splits
- :func:`estimate_worker_count` - Workers a host can carry for a category
- :func:`plan_splits` - Subdivide an outer split across workers

Example
-------
>>> from split_runner import OrchestratorRequest, load_run_settings, run_partitioned
>>> result = run_partitioned(OrchestratorRequest("test", "2/3"), load_run_settings())
>>> raise SystemExit(result.overall_exit_code)
"""

from __future__ import annotations

__version__ = "0.1.0"

from split_runner.aggregate import CompletionAggregator, RunResult, WorkerOutcome
from split_runner.config import (
    CategoryTable,
    JobCategory,
    RunSettings,
    load_category_table,
    load_run_settings,
)
from split_runner.errors import (
    ConfigError,
    DockerCommandError,
    InsufficientResourcesError,
    InvalidSplitFormatError,
    SplitRunnerError,
    UnknownTargetError,
    WorkerLaunchFailedError,
)
from split_runner.launcher import WorkerIdentity, WorkerJob, WorkerLauncher, WorkerStatus
from split_runner.orchestrator import OrchestratorRequest, plan_run, run_partitioned
from split_runner.resources import ResourceBudget, estimate_worker_count
from split_runner.splits import SplitSpec, TestSelection, plan_splits

__all__ = [
    "__version__",
    # Entry points
    "run_partitioned",
    "plan_run",
    "OrchestratorRequest",
    # Resources and splits
    "ResourceBudget",
    "estimate_worker_count",
    "SplitSpec",
    "TestSelection",
    "plan_splits",
    # Configuration
    "CategoryTable",
    "JobCategory",
    "RunSettings",
    "load_category_table",
    "load_run_settings",
    # Workers and results
    "CompletionAggregator",
    "RunResult",
    "WorkerIdentity",
    "WorkerJob",
    "WorkerLauncher",
    "WorkerOutcome",
    "WorkerStatus",
    # Errors
    "ConfigError",
    "DockerCommandError",
    "InsufficientResourcesError",
    "InvalidSplitFormatError",
    "SplitRunnerError",
    "UnknownTargetError",
    "WorkerLaunchFailedError",
]
