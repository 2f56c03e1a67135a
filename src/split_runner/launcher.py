"""Worker launch: one sandboxed container per partition.

WorkerLauncher materializes a worker in three steps:

1. ``docker run -d --rm`` a long-lived container (``sleep infinity``) with
   the category's memory cap (swap capped equal) and, unless the category
   is exempt, a ``--cpus`` share of the host.
2. Run the setup commands inside it as root (user creation, interpreter
   selection).
3. Start the test command with ``docker exec`` as a background process in
   its own session, combined output redirected to a per-worker log file.

``launch`` returns as soon as step 3 has been submitted; completion is
observed through the job's BackgroundTask.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import platform
import re
import secrets
import shlex
import signal
import string
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .docker import ContainerLimits, DockerCli, Mount, _get_host_uid_gid
from .errors import DockerCommandError, WorkerLaunchFailedError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from .config import JobCategory
    from .splits import SplitSpec

logger = logging.getLogger(__name__)

DEFAULT_WORKER_USER = "cassandra"
DEFAULT_TERMINATE_GRACE_SEC = 5.0
SALT_LENGTH = 6
# docker run reports its own errors with 125
LAUNCH_FAILED_EXIT_CODE = 125

_SALT_ALPHABET = string.ascii_letters + string.digits
_NAME_INVALID_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class WorkerStatus(str, enum.Enum):
    """Lifecycle of a worker: Pending -> Running -> Succeeded | Failed."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def random_salt(length: int = SALT_LENGTH) -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(length))


def _name_part(value: str) -> str:
    return _NAME_INVALID_RE.sub("-", value).strip("-.") or "x"


@dataclass(frozen=True)
class WorkerIdentity:
    """Structured identity of a worker; display strings derive from it."""

    category: str
    target: str
    version: str
    split: str
    salt: str = field(default_factory=random_salt)
    arch: str = field(default_factory=platform.machine)

    @property
    def container_name(self) -> str:
        split = _name_part(self.split.replace("/", "_"))[:40]
        return (
            f"cassandra_{_name_part(self.category)}_{_name_part(self.target)}"
            f"_jdk{_name_part(self.version.replace('.', '-'))}"
            f"_arch-{_name_part(self.arch or 'unknown')}_{split}__{self.salt}"
        )

    @property
    def label(self) -> str:
        """Short prefix for streamed output, e.g. ``test 5/12``."""
        return f"{self.target} {self.split}"


class BackgroundTask:
    """Owns one background process and a thread waiting on it.

    ``done`` is set as soon as the process exits, independently of who
    calls ``wait``; log followers key off it.
    """

    def __init__(self, proc: subprocess.Popen, name: str) -> None:
        self._proc = proc
        self.done = threading.Event()
        self._waiter = threading.Thread(target=self._wait, name=f"wait-{name}", daemon=True)
        self._waiter.start()

    def _wait(self) -> None:
        try:
            self._proc.wait()
        finally:
            self.done.set()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return not self.done.is_set()

    def wait(self) -> int:
        """Block until the process exits and return its exit code."""
        self._waiter.join()
        returncode = self._proc.returncode
        # killed by a signal -> conventional shell status
        return 128 - returncode if returncode < 0 else returncode

    def terminate(self, grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC) -> None:
        """Stop the process group: SIGTERM, then SIGKILL after ``grace_sec``."""
        if self._proc.poll() is not None:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            with contextlib.suppress(OSError):
                self._proc.terminate()

        if self.done.wait(timeout=max(0.1, grace_sec)):
            return

        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            with contextlib.suppress(OSError):
                self._proc.kill()
        self.done.wait(timeout=max(0.1, grace_sec))


@dataclass
class WorkerJob:
    """One launched worker.

    Created by WorkerLauncher in the Running state; only the aggregator
    moves it to Succeeded or Failed. A worker whose launch failed has no
    task and is Failed from the start.
    """

    identity: WorkerIdentity
    selection: str
    container_id: str
    log_path: Path
    task: BackgroundTask | None = None
    status: WorkerStatus = WorkerStatus.PENDING
    exit_code: int | None = None
    released: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def id(self) -> str:
        return self.identity.container_name

    @property
    def container(self) -> str:
        """Handle for docker commands: the id when known, else the name."""
        return self.container_id or self.identity.container_name

    @property
    def launched(self) -> bool:
        return self.task is not None

    def record_exit(self, exit_code: int) -> None:
        self.exit_code = exit_code
        self.status = WorkerStatus.SUCCEEDED if exit_code == 0 else WorkerStatus.FAILED

    @classmethod
    def launch_failed(cls, identity: WorkerIdentity, selection: str, log_path: Path) -> WorkerJob:
        return cls(
            identity=identity,
            selection=selection,
            container_id="",
            log_path=log_path,
            status=WorkerStatus.FAILED,
            exit_code=LAUNCH_FAILED_EXIT_CODE,
        )


@dataclass(frozen=True)
class WorkerCommand:
    """What runs inside each worker container.

    ``script`` is a bash snippet formatted with ``target``, ``split`` and
    ``version``. ``setup`` commands run as root before it.
    """

    script: str
    user: str = DEFAULT_WORKER_USER
    setup: tuple[tuple[str, ...], ...] = ()

    def render(self, *, target: str, split: str, version: str) -> list[str]:
        script = self.script.format(
            target=shlex.quote(target),
            split=shlex.quote(split),
            version=shlex.quote(version),
        )
        return ["bash", "-c", script]


def cassandra_worker_command(python_version: str, user: str = DEFAULT_WORKER_USER) -> WorkerCommand:
    """Default command: select the JDK, then run the in-container test wrapper."""
    uid, gid = _get_host_uid_gid()
    return WorkerCommand(
        script=(
            "source ${{CASSANDRA_DIR}}/.build/docker/_set_java.sh {version} ; "
            "${{CASSANDRA_DIR}}/.build/docker/_docker_init_tests.sh {target} {split} ; exit $?"
        ),
        user=user,
        setup=(
            (
                "bash",
                "-c",
                f"${{CASSANDRA_DIR}}/.build/docker/_create_user.sh {user} {uid} {gid}",
            ),
            ("update-alternatives", "--set", "python", f"/usr/bin/python{python_version}"),
        ),
    )


class WorkerLauncher:
    """Starts workers for one run.

    All workers of a run share the image, category, limits and log
    directory; only the selection differs.
    """

    def __init__(
        self,
        docker: DockerCli,
        *,
        image: str,
        category: JobCategory,
        target: str,
        version: str,
        command: WorkerCommand,
        logs_dir: Path,
        cpus: str | None = None,
    ) -> None:
        self._docker = docker
        self._image = image
        self._category = category
        self._target = target
        self._version = version
        self._command = command
        self._logs_dir = logs_dir
        self._limits = ContainerLimits(
            memory=category.container_memory_flag,
            cpus=cpus if category.cpu_capped else None,
        )

    @property
    def limits(self) -> ContainerLimits:
        return self._limits

    def log_path_for(self, identity: WorkerIdentity) -> Path:
        return self._logs_dir / f"docker_attach_{identity.container_name}.log"

    def identity_for(self, split: SplitSpec | str) -> WorkerIdentity:
        return WorkerIdentity(
            category=self._category.name,
            target=self._target,
            version=self._version,
            split=str(split),
        )

    def launch(
        self,
        split: SplitSpec | str,
        env: Mapping[str, str],
        mounts: Iterable[Mount],
    ) -> WorkerJob:
        """Start one worker for ``split`` and return without waiting for it.

        Raises:
            WorkerLaunchFailedError: If the container cannot be started or
                prepared, or the background exec cannot be spawned. The
                error carries the worker identity.
        """
        selection = str(split)
        identity = self.identity_for(selection)
        name = identity.container_name

        try:
            container_id = self._docker.run_detached(
                self._image,
                name,
                limits=self._limits,
                env=env,
                mounts=sorted(mounts, key=lambda m: m.container_path),
            )
        except DockerCommandError as e:
            raise WorkerLaunchFailedError(name, str(e), identity) from e

        logger.info("Running container %s %s", name, container_id)
        handle = container_id or name

        log_path = self.log_path_for(identity)
        # the container is not tracked by anyone until this returns
        try:
            task = self._prepare(handle, selection, log_path, name)
        except DockerCommandError as e:
            self._discard(handle)
            raise WorkerLaunchFailedError(name, f"setup failed: {e}", identity) from e
        except OSError as e:
            self._discard(handle)
            raise WorkerLaunchFailedError(
                name, f"could not start worker command: {e}", identity
            ) from e
        except BaseException:
            self._discard(handle)
            raise

        return WorkerJob(
            identity=identity,
            selection=selection,
            container_id=container_id,
            log_path=log_path,
            task=task,
            status=WorkerStatus.RUNNING,
        )

    def _prepare(self, handle: str, selection: str, log_path: Path, name: str) -> BackgroundTask:
        """Run the root setup execs, then spawn the worker command."""
        for setup in self._command.setup:
            self._docker.exec(handle, setup, user="root")
        argv = self._docker.exec_argv(
            handle,
            self._command.render(target=self._target, split=selection, version=self._version),
            user=self._command.user,
        )
        return self._spawn(argv, log_path, name)

    def _spawn(self, argv: Sequence[str], log_path: Path, name: str) -> BackgroundTask:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("wb") as log_file:
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        return BackgroundTask(proc, name)

    def _discard(self, container: str) -> None:
        if not self._docker.stop(container):
            self._docker.remove(container)


__all__ = [
    "LAUNCH_FAILED_EXIT_CODE",
    "BackgroundTask",
    "WorkerCommand",
    "WorkerIdentity",
    "WorkerJob",
    "WorkerLauncher",
    "WorkerStatus",
    "cassandra_worker_command",
    "random_salt",
]
