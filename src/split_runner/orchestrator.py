"""Partitioned test run orchestration.

``run_partitioned`` is the whole control flow of one run:

1. Preflight. Category lookup, selection parsing, resource estimation,
   JDK version resolution and host checks. Any failure here raises before
   a single container exists.
2. Acquire the worker image.
3. Launch one worker per inner split, in partition order, each with a log
   follower.
4. Aggregate in the same order, then compress the worker logs.

Steps 3 and 4 run inside a PartitionedRun, which terminates every worker
still running when the scope is left early (exception, KeyboardInterrupt,
or SIGTERM once the CLI has turned it into SystemExit).
"""

from __future__ import annotations

import logging
import lzma
import platform
import shutil
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

from .aggregate import CompletionAggregator, RunResult
from .config import CategoryTable, load_category_table, read_java_versions
from .docker import DockerCli, Mount
from .errors import ConfigError, DockerCommandError, WorkerLaunchFailedError
from .image import ensure_worker_image
from .launcher import (
    DEFAULT_TERMINATE_GRACE_SEC,
    WorkerJob,
    WorkerLauncher,
    cassandra_worker_command,
)
from .resources import (
    ResourceBudget,
    cpus_per_worker,
    detect_host_budget,
    detect_tenancy_factor,
    estimate_worker_count,
)
from .splits import TestSelection
from .streaming import LogStreamer

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .config import JobCategory, RunSettings

logger = logging.getLogger(__name__)

DEFAULT_PYTHON_VERSION = "3.8"
CONTAINER_DIST_DIR = "/dist"
CONTAINER_M2_REPOSITORY = "/home/cassandra/.m2/repository"


@dataclass(frozen=True)
class OrchestratorRequest:
    """What to run: a target, a selection within it, and the runtimes."""

    target: str
    selection: str | None = None
    version: str | None = None
    python_version: str = DEFAULT_PYTHON_VERSION


@dataclass(frozen=True)
class RunPlan:
    """Preflight outcome: everything decided before any launch."""

    target: str
    category: JobCategory
    selection: TestSelection
    budget: ResourceBudget
    estimated_workers: int
    worker_count: int
    splits: tuple[str, ...]
    cpus: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "category": self.category.name,
            "selection": str(self.selection),
            "cpu_count": self.budget.cpu_count,
            "memory_bytes": self.budget.memory_bytes,
            "tenancy_factor": self.budget.tenancy_factor,
            "estimated_workers": self.estimated_workers,
            "worker_count": self.worker_count,
            "splits": list(self.splits),
            "cpus": self.cpus,
            "memory": self.category.container_memory_flag,
        }


def plan_run(
    request: OrchestratorRequest,
    table: CategoryTable,
    budget: ResourceBudget,
    *,
    worker_count_override: int | None = None,
) -> RunPlan:
    """Decide the worker count and inner splits for ``request``.

    The override replaces the estimate for splittable K/N selections only;
    single-worker categories and pattern selections always get one worker.

    Raises:
        UnknownTargetError: If the target is in no category.
        InvalidSplitFormatError: If the selection is a malformed K/N.
        InsufficientResourcesError: If a single-worker category does not fit.
    """
    category = table.for_target(request.target)
    selection = TestSelection.parse(request.selection)
    estimated = estimate_worker_count(category, budget)

    worker_count = estimated
    if worker_count_override is not None and worker_count_override != estimated:
        logger.info(
            "Worker count override %d replaces estimate %d",
            worker_count_override,
            estimated,
        )
        worker_count = worker_count_override
    if not category.splittable or not selection.splittable:
        worker_count = 1

    cpus = cpus_per_worker(budget, worker_count) if category.cpu_capped else None
    return RunPlan(
        target=request.target,
        category=category,
        selection=selection,
        budget=budget,
        estimated_workers=estimated,
        worker_count=worker_count,
        splits=tuple(selection.plan(worker_count)),
        cpus=cpus,
    )


# =============================================================================
# Worker environment
# =============================================================================


def worker_environment(
    settings: RunSettings,
    category: JobCategory,
    *,
    version: str,
    python_version: str,
    arch: str | None = None,
) -> dict[str, str]:
    """Environment variables passed into every worker container."""
    arch = arch or platform.machine() or "unknown"
    env = {
        "TEST_SCRIPT": category.test_script,
        "JAVA_VERSION": version,
        "PYTHON_VERSION": python_version,
        "CYTHON_ENABLED": "no",
        "ANT_OPTS": f"-Dtesttag.extra=.arch={arch}.python{python_version}.cython=no",
        "CASSANDRA_DIR": settings.container_project_dir,
        "CASSANDRA_DTEST_DIR": settings.container_dtest_dir,
    }
    env.update(settings.extra_env)
    return env


def worker_mounts(
    settings: RunSettings,
    category: JobCategory,
    *,
    home: Path | None = None,
) -> list[Mount]:
    home = home or Path.home()
    mounts = [
        Mount(settings.project_dir, settings.container_project_dir),
        Mount(settings.build_dir, CONTAINER_DIST_DIR),
        Mount(home / ".m2" / "repository", CONTAINER_M2_REPOSITORY),
    ]
    if category.requires_dtest_dir:
        mounts.append(Mount(settings.dtest_dir, settings.container_dtest_dir))
    return mounts


def check_prerequisites(settings: RunSettings, category: JobCategory, docker: DockerCli) -> None:
    """Host checks that must pass before any container is created.

    Raises:
        ConfigError: If a python dtest category has no dtest checkout.
        DockerCommandError: If the docker daemon does not answer.
    """
    if category.requires_dtest_dir and not (settings.dtest_dir / "dtest.py").is_file():
        raise ConfigError(
            f"{settings.dtest_dir}/dtest.py not found. Set CASSANDRA_DTEST_DIR to "
            "a local cassandra-dtest checkout"
        )
    if not docker.is_available():
        raise DockerCommandError([docker.docker_bin, "info"], 1, "docker needs to be running")


# =============================================================================
# Scoped run
# =============================================================================


class PartitionedRun:
    """Scope owning every worker of one run.

    Workers are launched in partition order through ``launch_all``. Leaving
    the scope terminates any worker that is still running and stops every
    container the aggregator has not released yet.

    Example:
        >>> with PartitionedRun(docker, launcher) as run:
        ...     jobs = run.launch_all(splits, env, mounts)
        ...     result = aggregator.aggregate(jobs, on_finished=run.finish_streaming)
    """

    def __init__(
        self,
        docker: DockerCli,
        launcher: WorkerLauncher,
        *,
        out: TextIO | None = None,
        grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC,
        stream_logs: bool = True,
    ) -> None:
        self._docker = docker
        self._launcher = launcher
        self._out = out
        self._grace_sec = grace_sec
        self._stream_logs = stream_logs
        self._jobs: list[WorkerJob] = []
        self._streamers: dict[str, LogStreamer] = {}

    @property
    def jobs(self) -> list[WorkerJob]:
        return list(self._jobs)

    def __enter__(self) -> PartitionedRun:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is not None:
            logger.warning("Run interrupted (%s); tearing down workers", exc_type.__name__)
        self.teardown()

    def launch_all(
        self,
        splits: Iterable[str],
        env: Mapping[str, str],
        mounts: Sequence[Mount],
    ) -> list[WorkerJob]:
        """Launch one worker per split, in order.

        A worker whose launch fails is recorded as Failed and the remaining
        splits are still launched.
        """
        for split in splits:
            try:
                job = self._launcher.launch(split, env, mounts)
            except WorkerLaunchFailedError as e:
                logger.error("%s", e)
                identity = e.identity or self._launcher.identity_for(split)
                job = WorkerJob.launch_failed(identity, split, self._launcher.log_path_for(identity))
                self._jobs.append(job)
                continue

            self._jobs.append(job)
            if self._stream_logs:
                self._streamers[job.id] = LogStreamer(job, self._out).start()
        return self.jobs

    def finish_streaming(self, job: WorkerJob) -> None:
        """Wait for ``job``'s follower to drain its log."""
        streamer = self._streamers.get(job.id)
        if streamer is not None:
            streamer.join()

    def teardown(self) -> None:
        for job in self._jobs:
            if not job.launched or job.released:
                continue
            if job.task is not None and job.task.running:
                logger.warning("Terminating worker %s", job.id)
                job.task.terminate(self._grace_sec)
            job.released = True
            try:
                if not self._docker.stop(job.container):
                    self._docker.remove(job.container)
            except DockerCommandError as e:
                logger.warning("Could not stop container %s: %s", job.container, e)
        for streamer in self._streamers.values():
            streamer.stop()


# =============================================================================
# Logs
# =============================================================================


def compress_log(path: Path) -> Path:
    """Replace ``path`` with ``path.xz`` (like ``xz -f``) and return the new path."""
    target = path.with_name(f"{path.name}.xz")
    with path.open("rb") as src, lzma.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return target


def _compress_worker_logs(result: RunResult) -> RunResult:
    workers = []
    for worker in result.workers:
        log_path = worker.log_path
        if log_path is not None and log_path.is_file():
            try:
                log_path = compress_log(log_path)
            except OSError as e:
                logger.warning("Could not compress %s: %s", log_path, e)
        workers.append(replace(worker, log_path=log_path))
    return replace(result, workers=tuple(workers))


# =============================================================================
# Entry point
# =============================================================================


def run_partitioned(
    request: OrchestratorRequest,
    settings: RunSettings,
    *,
    table: CategoryTable | None = None,
    docker: DockerCli | None = None,
    budget: ResourceBudget | None = None,
    out: TextIO | None = None,
) -> RunResult:
    """Run ``request`` across as many workers as the host allows.

    Args:
        request: Target, selection and runtime versions.
        settings: Host paths and run policy.
        table: Category table. Defaults to the packaged one.
        docker: Docker CLI wrapper.
        budget: Host resource snapshot. Detected when omitted.
        out: Stream for worker output and reports. Defaults to stdout.

    Returns:
        The RunResult; its ``overall_exit_code`` is the process exit code.

    Raises:
        SplitRunnerError: For any preflight failure, before any launch.
    """
    table = table or load_category_table()
    docker = docker or DockerCli()
    if budget is None:
        budget = detect_host_budget(detect_tenancy_factor())

    plan = plan_run(
        request,
        table,
        budget,
        worker_count_override=settings.worker_count_override,
    )
    version = read_java_versions(settings.project_dir / "build.xml").resolve(request.version)
    check_prerequisites(settings, plan.category, docker)
    settings.ensure_directories()

    logger.info(
        "%s %s: %d worker(s) %s",
        request.target,
        plan.selection,
        plan.worker_count,
        " ".join(plan.splits),
    )

    dockerfile = settings.project_dir / ".build" / "docker" / settings.dockerfile
    image = ensure_worker_image(
        docker,
        dockerfile,
        settings.project_dir / ".build",
        retry_delay_sec=settings.build_retry_delay_sec,
    )

    launcher = WorkerLauncher(
        docker,
        image=image,
        category=plan.category,
        target=request.target,
        version=version,
        command=cassandra_worker_command(request.python_version),
        logs_dir=settings.logs_dir,
        cpus=plan.cpus,
    )
    aggregator = CompletionAggregator(
        docker,
        build_dir=settings.build_dir,
        artifacts=table.artifacts,
        container_build_dir=settings.container_build_dir,
        container_dtest_dir=settings.container_dtest_dir,
        log_tail=settings.diagnostic_log_tail,
        out=out,
    )
    env = worker_environment(
        settings,
        plan.category,
        version=version,
        python_version=request.python_version,
    )
    mounts = worker_mounts(settings, plan.category)

    with PartitionedRun(docker, launcher, out=out) as run:
        jobs = run.launch_all(plan.splits, env, mounts)
        result = aggregator.aggregate(jobs, on_finished=run.finish_streaming)

    if settings.compress_logs:
        result = _compress_worker_logs(result)
    return result


__all__ = [
    "DEFAULT_PYTHON_VERSION",
    "OrchestratorRequest",
    "PartitionedRun",
    "RunPlan",
    "check_prerequisites",
    "compress_log",
    "plan_run",
    "run_partitioned",
    "worker_environment",
    "worker_mounts",
]
