"""Completion aggregation: drain workers, collect results, tear down.

Workers are drained in submission order, not completion order, so the
printed output and the surfaced exit code are the same on every rerun of
the same split. For each worker:

- non-zero exit: a diagnostic bundle (container metadata, container log
  tail, host container list, daemon info, worker log tail) is printed
  immediately;
- zero exit: artifacts are copied out of the container best-effort, since
  not every target produces every artifact;
- always: the container is stopped and removed.

The overall exit code is the first non-zero worker code in submission
order, else 0.
"""

from __future__ import annotations

import json
import logging
import sys
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

from .errors import DockerCommandError
from .streaming import emit

if TYPE_CHECKING:
    from .config import ArtifactSpec
    from .docker import DockerCli, DockerResult
    from .launcher import WorkerJob

logger = logging.getLogger(__name__)

RULE = "–––"

FinishedHook = Callable[["WorkerJob"], None]


@dataclass(frozen=True)
class WorkerOutcome:
    """Final record for one worker."""

    job_id: str
    split: str
    exit_code: int
    artifacts: tuple[Path, ...] = ()
    log_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class RunResult:
    """Aggregate of one orchestrator run, in submission order."""

    overall_exit_code: int
    workers: tuple[WorkerOutcome, ...] = field(default_factory=tuple)

    @property
    def all_succeeded(self) -> bool:
        return all(w.succeeded for w in self.workers)

    @property
    def failed(self) -> tuple[WorkerOutcome, ...]:
        return tuple(w for w in self.workers if not w.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_exit_code": self.overall_exit_code,
            "all_succeeded": self.all_succeeded,
            "workers": [
                {
                    "job_id": w.job_id,
                    "split": w.split,
                    "exit_code": w.exit_code,
                    "artifacts": [str(p) for p in w.artifacts],
                    "log_path": str(w.log_path) if w.log_path else None,
                }
                for w in self.workers
            ],
        }


def first_failure_code(codes: Sequence[int]) -> int:
    """First non-zero code in order, else 0."""
    for code in codes:
        if code != 0:
            return code
    return 0


def write_run_result(result: RunResult, output_path: Path) -> None:
    """Write a run summary as JSON."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(result.to_dict(), indent=2, sort_keys=True)
    output_path.write_text(f"{text}\n", encoding="utf-8")


class CompletionAggregator:
    """Waits for every worker and folds their statuses into a RunResult."""

    def __init__(
        self,
        docker: DockerCli,
        *,
        build_dir: Path,
        artifacts: Sequence[ArtifactSpec] = (),
        container_build_dir: str = "",
        container_dtest_dir: str = "",
        log_tail: int = 200,
        out: TextIO | None = None,
    ) -> None:
        self._docker = docker
        self._build_dir = build_dir
        self._artifacts = tuple(artifacts)
        self._container_build_dir = container_build_dir
        self._container_dtest_dir = container_dtest_dir
        self._log_tail = log_tail
        self._out = out

    @property
    def out(self) -> TextIO:
        return self._out if self._out is not None else sys.stdout

    def aggregate(
        self,
        jobs: Sequence[WorkerJob],
        *,
        on_finished: FinishedHook | None = None,
    ) -> RunResult:
        """Drain ``jobs`` in order and build the RunResult.

        Args:
            jobs: Workers in submission order.
            on_finished: Called after a worker's task exits and before its
                report is printed (used to let its log follower drain).
        """
        outcomes: list[WorkerOutcome] = []
        for job in jobs:
            outcomes.append(self._drain(job, on_finished))

        overall = first_failure_code([o.exit_code for o in outcomes])
        if overall:
            logger.warning(
                "%d of %d workers failed; surfacing exit code %d",
                sum(1 for o in outcomes if not o.succeeded),
                len(outcomes),
                overall,
            )
        return RunResult(overall_exit_code=overall, workers=tuple(outcomes))

    def _drain(self, job: WorkerJob, on_finished: FinishedHook | None) -> WorkerOutcome:
        artifacts: list[Path] = []
        try:
            if job.task is not None:
                job.record_exit(job.task.wait())
            exit_code = job.exit_code if job.exit_code is not None else 0

            if on_finished is not None:
                on_finished(job)
            self._print("")

            if exit_code != 0:
                logger.warning("Worker %s (%s) failed with %d", job.id, job.selection, exit_code)
                report = self.collect_diagnostics(job)
                self._print(f"{job.container} failed ({exit_code}), debug…\n{report}\nFailure.")
            else:
                self._print(f"{job.container} done (status={exit_code}), copying files…")
                artifacts = self.collect_artifacts(job)
                self._print("Completed.")
        finally:
            if job.launched:
                self.release(job)

        return WorkerOutcome(
            job_id=job.id,
            split=job.selection,
            exit_code=exit_code,
            artifacts=tuple(artifacts),
            log_path=job.log_path,
        )

    def _print(self, text: str) -> None:
        emit(text, self.out)

    # -------------------------------------------------------------------------
    # Failure path
    # -------------------------------------------------------------------------

    def collect_diagnostics(self, job: WorkerJob) -> str:
        """Diagnostic bundle for a failed worker, as printable text."""
        probes: list[tuple[str, Callable[[], DockerResult]]] = []
        if job.launched:
            probes.append(("docker inspect", lambda: self._docker.inspect(job.container)))
            probes.append(
                (
                    f"docker logs --tail {self._log_tail}",
                    lambda: self._docker.logs(job.container, tail=self._log_tail),
                )
            )
        probes.append(("docker ps -a", self._docker.ps_all))
        probes.append(("docker info", self._docker.info))

        sections: list[str] = []
        for description, probe in probes:
            sections.append(f"--- {description} ---")
            try:
                result = probe()
            except DockerCommandError as e:
                sections.append(f"[ERROR: {e}]")
            else:
                if result.stdout:
                    sections.append(result.stdout.rstrip())
                if result.stderr:
                    sections.append(f"[stderr] {result.stderr.rstrip()}")
                if result.returncode != 0:
                    sections.append(f"[exit code: {result.returncode}]")
            sections.append(RULE)

        sections.append(f"--- worker log tail {self._log_tail} ---")
        sections.extend(self.worker_log_tail(job))
        sections.append(RULE)
        return "\n".join(sections)

    def worker_log_tail(self, job: WorkerJob) -> list[str]:
        """Last ``log_tail`` lines of the worker command's own output."""
        try:
            with job.log_path.open("r", encoding="utf-8", errors="replace") as f:
                lines = deque(f, maxlen=self._log_tail)
        except OSError as e:
            return [f"[ERROR: {e}]"]
        return [line.rstrip("\n") for line in lines]

    # -------------------------------------------------------------------------
    # Success path
    # -------------------------------------------------------------------------

    def collect_artifacts(self, job: WorkerJob) -> list[Path]:
        """Copy every available artifact out of the worker's container."""
        collected: list[Path] = []
        for spec in self._artifacts:
            source = spec.resolve_source(self._container_build_dir, self._container_dtest_dir)
            dest_dir = self._build_dir / spec.dest
            try:
                dest_dir.mkdir(parents=True, exist_ok=True)
                copied = self._docker.copy_from(job.container, source, dest_dir)
            except (DockerCommandError, OSError) as e:
                logger.warning("Copying %s from %s failed: %s", source, job.id, e)
                continue
            if not copied:
                logger.debug("Artifact %s not present in %s", source, job.id)
                continue
            if source.endswith("/."):
                collected.append(dest_dir)
            else:
                collected.append(dest_dir / Path(source).name)
        return collected

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def release(self, job: WorkerJob) -> None:
        """Stop and remove the worker's container; already gone is fine."""
        job.released = True
        try:
            stopped = self._docker.stop(job.container)
            # --rm containers vanish on stop; rm only matters if stop failed
            if not stopped:
                self._docker.remove(job.container)
        except DockerCommandError as e:
            logger.warning("Could not stop container %s: %s", job.container, e)


__all__ = [
    "CompletionAggregator",
    "RunResult",
    "WorkerOutcome",
    "first_failure_code",
    "write_run_result",
]
