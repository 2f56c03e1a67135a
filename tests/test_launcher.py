"""Tests for worker identity, background tasks and the worker launcher.

This module tests:
- Container names derived from the structured identity
- BackgroundTask completion, exit codes and process-group termination
- The three launch steps and their failure paths
"""
from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path

import pytest

from split_runner.config import GIB, JobCategory
from split_runner.docker import Mount
from split_runner.errors import WorkerLaunchFailedError
from split_runner.launcher import (
    LAUNCH_FAILED_EXIT_CODE,
    BackgroundTask,
    WorkerCommand,
    WorkerIdentity,
    WorkerJob,
    WorkerLauncher,
    WorkerStatus,
    cassandra_worker_command,
    random_salt,
)

STANDARD = JobCategory(
    name="standard",
    min_memory_bytes=5 * GIB,
    container_memory_bytes=5 * GIB,
    splittable=True,
)
LONG = JobCategory(
    name="long-running",
    min_memory_bytes=5 * GIB,
    container_memory_bytes=5 * GIB,
    splittable=False,
    cpu_capped=False,
)


def _launcher(docker, logs_dir: Path, *, category: JobCategory = STANDARD, cpus: str | None = "4.00") -> WorkerLauncher:
    return WorkerLauncher(
        docker,
        image="apache/cassandra-ubuntu2004_test:deadbeef",
        category=category,
        target="test",
        version="11",
        command=cassandra_worker_command("3.8"),
        logs_dir=logs_dir,
        cpus=cpus,
    )


def _popen(code: int, delay: float = 0.0) -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-c", f"import sys, time; time.sleep({delay}); sys.exit({code})"],
        start_new_session=True,
    )


# =============================================================================
# Identity
# =============================================================================


class TestWorkerIdentity:
    def test_container_name(self) -> None:
        identity = WorkerIdentity(
            category="standard",
            target="test",
            version="11",
            split="5/12",
            salt="AbC123",
            arch="x86_64",
        )
        assert identity.container_name == "cassandra_standard_test_jdk11_arch-x86_64_5_12__AbC123"
        assert identity.label == "test 5/12"

    def test_version_dots_replaced(self) -> None:
        identity = WorkerIdentity("standard", "test", "1.8", "1/1", salt="x", arch="aarch64")
        assert "_jdk1-8_" in identity.container_name

    def test_pattern_split_sanitised(self) -> None:
        identity = WorkerIdentity("standard", "test", "11", "org.apache.*Compaction*", salt="s", arch="x86_64")
        name = identity.container_name
        assert "*" not in name
        assert name.endswith("__s")

    def test_salts_are_random(self) -> None:
        salts = {random_salt() for _ in range(20)}
        assert len(salts) > 1
        assert all(len(s) == 6 and s.isalnum() for s in salts)


# =============================================================================
# BackgroundTask
# =============================================================================


class TestBackgroundTask:
    def test_wait_returns_exit_code(self) -> None:
        task = BackgroundTask(_popen(3), "t")
        assert task.wait() == 3
        assert task.done.is_set()
        assert not task.running

    def test_terminate_running_process(self) -> None:
        task = BackgroundTask(_popen(0, delay=30), "t")
        assert task.running
        start = time.monotonic()
        task.terminate(grace_sec=2.0)
        assert task.done.wait(timeout=5)
        assert time.monotonic() - start < 10
        # SIGTERM -> 128 + 15
        assert task.wait() == 143

    def test_terminate_finished_is_noop(self) -> None:
        task = BackgroundTask(_popen(0), "t")
        task.wait()
        task.terminate()
        assert task.wait() == 0


# =============================================================================
# WorkerJob
# =============================================================================


class TestWorkerJob:
    def test_record_exit(self, tmp_path: Path) -> None:
        identity = WorkerIdentity("standard", "test", "11", "1/1", salt="s", arch="x")
        job = WorkerJob(identity=identity, selection="1/1", container_id="cid", log_path=tmp_path / "l")
        assert job.status is WorkerStatus.PENDING
        job.record_exit(0)
        assert job.status is WorkerStatus.SUCCEEDED
        job.record_exit(2)
        assert job.status is WorkerStatus.FAILED
        assert job.exit_code == 2

    def test_launch_failed(self, tmp_path: Path) -> None:
        identity = WorkerIdentity("standard", "test", "11", "1/1", salt="s", arch="x")
        job = WorkerJob.launch_failed(identity, "1/1", tmp_path / "l")
        assert job.status is WorkerStatus.FAILED
        assert job.exit_code == LAUNCH_FAILED_EXIT_CODE
        assert not job.launched
        assert job.container == identity.container_name


# =============================================================================
# WorkerCommand
# =============================================================================


class TestWorkerCommand:
    def test_render_quotes_values(self) -> None:
        command = WorkerCommand(script="run {target} {split} {version}")
        argv = command.render(target="test", split="a b", version="11")
        assert argv == ["bash", "-c", "run test 'a b' 11"]

    def test_cassandra_command(self) -> None:
        command = cassandra_worker_command("3.8")
        script = command.render(target="test", split="5/12", version="11")[-1]
        assert "_set_java.sh 11" in script
        assert "_docker_init_tests.sh test 5/12" in script
        assert script.endswith("exit $?")
        assert command.user == "cassandra"
        assert command.setup[-1] == ("update-alternatives", "--set", "python", "/usr/bin/python3.8")
        assert "_create_user.sh cassandra" in command.setup[0][-1]


# =============================================================================
# WorkerLauncher
# =============================================================================


class TestWorkerLauncher:
    def test_launch_steps(self, fake_docker, tmp_path: Path) -> None:
        docker = fake_docker()
        launcher = _launcher(docker, tmp_path / "logs")
        mounts = [
            Mount(tmp_path / "m2", "/home/cassandra/.m2/repository"),
            Mount(tmp_path / "src", "/home/cassandra/cassandra"),
        ]
        job = launcher.launch("5/12", {"JAVA_VERSION": "11"}, mounts)

        assert job.status is WorkerStatus.RUNNING
        assert job.launched
        assert job.selection == "5/12"
        assert job.container_id == f"{job.id}-id"
        assert job.log_path == tmp_path / "logs" / f"docker_attach_{job.id}.log"

        run = docker.commands("run")[0]
        assert run[run.index("--name") + 1] == job.id
        assert "-d" in run and "--rm" in run
        assert "--cpus=4.00" in run
        assert run[run.index("-m") + 1] == "5g"
        assert run[run.index("--memory-swap") + 1] == "5g"
        assert run[-2:] == ["sleep", "infinity"]
        volumes = [run[i + 1] for i, a in enumerate(run) if a == "-v"]
        assert volumes == [m.to_arg() for m in sorted(mounts, key=lambda m: m.container_path)]

        setup = docker.commands("exec")
        assert len(setup) == 2
        assert all(c[1:3] == ["--user", "root"] for c in setup)

        assert job.task is not None
        assert job.task.wait() == 0
        assert "_docker_init_tests.sh test 5/12" in job.log_path.read_text(encoding="utf-8")

    def test_uncapped_category_has_no_cpus_flag(self, fake_docker, tmp_path: Path) -> None:
        docker = fake_docker()
        launcher = _launcher(docker, tmp_path / "logs", category=LONG, cpus="8.00")
        assert launcher.limits.cpus is None
        job = launcher.launch("1/1", {}, [])
        job.task.wait()
        assert not any(a.startswith("--cpus") for a in docker.commands("run")[0])

    def test_worker_exit_code_propagates(self, fake_docker, tmp_path: Path) -> None:
        docker = fake_docker(worker_exit=lambda script: 7)
        job = _launcher(docker, tmp_path / "logs").launch("1/1", {}, [])
        assert job.task.wait() == 7

    def test_run_failure(self, fake_docker, tmp_path: Path) -> None:
        docker = fake_docker(fail={"run": (125, "no space left on device")})
        launcher = _launcher(docker, tmp_path / "logs")
        with pytest.raises(WorkerLaunchFailedError) as excinfo:
            launcher.launch("2/4", {}, [])
        assert excinfo.value.identity.split == "2/4"
        assert "no space left" in str(excinfo.value)
        assert docker.commands("exec") == []

    def test_setup_failure_discards_container(self, fake_docker, tmp_path: Path) -> None:
        docker = fake_docker(fail={"exec": (1, "useradd failed")})
        launcher = _launcher(docker, tmp_path / "logs")
        with pytest.raises(WorkerLaunchFailedError, match="setup failed"):
            launcher.launch("1/1", {}, [])
        assert len(docker.commands("stop")) == 1

    def test_interrupted_spawn_discards_container(
        self, fake_docker, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        docker = fake_docker()
        launcher = _launcher(docker, tmp_path / "logs")

        def terminated(*args, **kwargs):
            raise SystemExit(143)

        monkeypatch.setattr(launcher, "_spawn", terminated)
        with pytest.raises(SystemExit):
            launcher.launch("1/1", {}, [])
        assert len(docker.commands("run")) == 1
        assert len(docker.commands("stop")) == 1
