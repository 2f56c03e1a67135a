"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- Deterministic test environment setup
- A fake docker CLI that records argv and runs workers as local processes
- A throwaway project checkout and matching RunSettings
"""
from __future__ import annotations

import os
import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from split_runner.config import CategoryTable, RunSettings, load_category_table
from split_runner.docker import DockerCli, DockerResult

# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Fake docker
# ---------------------------------------------------------------------------


class FakeDocker(DockerCli):
    """DockerCli that never touches a daemon.

    Every short-lived command is recorded in ``calls`` (argv without the
    docker binary) and answered from ``fail`` or a canned success. Worker
    execs become ``python -c`` processes that echo the worker script and
    exit with ``worker_exit(script)``.
    """

    def __init__(
        self,
        *,
        worker_exit: Callable[[str], int] | None = None,
        worker_delay: float = 0.0,
        fail: dict[str, tuple[int, str]] | None = None,
        image_present: bool = True,
        missing_artifacts: Sequence[str] = (),
    ) -> None:
        super().__init__(docker_bin="docker", timeout=5)
        self.calls: list[list[str]] = []
        self.fail = dict(fail or {})
        self.image_present = image_present
        self.missing_artifacts = tuple(missing_artifacts)
        self._worker_exit = worker_exit or (lambda script: 0)
        self._worker_delay = worker_delay
        self._lock = threading.Lock()

    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> DockerResult:
        args = list(args)
        with self._lock:
            self.calls.append(args)
        command = ["docker", *args]
        sub = args[0]

        if sub in self.fail:
            returncode, stderr = self.fail[sub]
            return DockerResult(returncode, "", stderr, command)

        stdout = ""
        if sub == "run":
            stdout = f"{args[args.index('--name') + 1]}-id\n"
        elif sub == "images":
            stdout = "0123abcd\n" if self.image_present else ""
        elif sub == "cp":
            source = args[1].split(":", 1)[1]
            if any(source.endswith(m) for m in self.missing_artifacts):
                return DockerResult(1, "", "No such container:path", command)
        elif sub in ("inspect", "logs", "ps", "info"):
            stdout = f"{sub} output\n"
        return DockerResult(0, stdout, "", command)

    def exec_argv(
        self,
        container: str,
        command: Sequence[str],
        *,
        user: str | None = None,
    ) -> list[str]:
        script = command[-1]
        code = self._worker_exit(script)
        program = (
            "import sys, time\n"
            f"time.sleep({self._worker_delay!r})\n"
            f"print({script!r})\n"
            f"sys.exit({code})\n"
        )
        return [sys.executable, "-c", program]

    def commands(self, sub: str) -> list[list[str]]:
        with self._lock:
            return [c for c in self.calls if c[0] == sub]


@pytest.fixture
def fake_docker() -> Callable[..., FakeDocker]:
    """Factory for FakeDocker instances.

    Usage:
        def test_something(fake_docker):
            docker = fake_docker(worker_exit=lambda script: 3 if " 2/3 " in script else 0)
    """

    def factory(**kwargs: Any) -> FakeDocker:
        return FakeDocker(**kwargs)

    return factory


# ---------------------------------------------------------------------------
# Fixtures: Project checkout
# ---------------------------------------------------------------------------

BUILD_XML = """<project name="cassandra" default="jar">
  <property name="java.default" value="11" />
  <property name="java.supported" value="11,17" />
</project>
"""


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A minimal source checkout: build.xml and the worker dockerfile."""
    root = tmp_path / "cassandra"
    docker_dir = root / ".build" / "docker"
    docker_dir.mkdir(parents=True)
    (docker_dir / "ubuntu2004_test.docker").write_text("FROM ubuntu:20.04\n", encoding="utf-8")
    (root / "build.xml").write_text(BUILD_XML, encoding="utf-8")
    return root


@pytest.fixture
def run_settings(tmp_path: Path, project_dir: Path) -> RunSettings:
    dtest_dir = tmp_path / "cassandra-dtest"
    dtest_dir.mkdir()
    (dtest_dir / "dtest.py").write_text("# dtest\n", encoding="utf-8")
    return RunSettings(
        project_dir=project_dir,
        build_dir=project_dir / "build",
        dtest_dir=dtest_dir,
        build_retry_delay_sec=0.0,
    )


@pytest.fixture(scope="session")
def category_table() -> CategoryTable:
    """The packaged category table."""
    return load_category_table()
