"""Thin wrapper around the docker CLI.

DockerCli builds argv lists for the handful of docker subcommands the
orchestrator needs and runs them with ``subprocess.run``. Commands that
must succeed raise DockerCommandError; best-effort commands (stop, rm, cp)
return a bool so callers can tolerate missing containers or artifacts.

The argv builders are public so the launcher can start long-running
``docker exec`` sessions itself, detached from this object.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import DockerCommandError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_BIN = "docker"
DEFAULT_COMMAND_TIMEOUT_SEC: float = 300.0


def _get_host_uid_gid() -> tuple[int, int]:
    """Get the current host user's UID and GID."""
    return os.getuid(), os.getgid()


@dataclass(frozen=True)
class DockerResult:
    """Result of a docker CLI invocation."""

    returncode: int
    stdout: str
    stderr: str
    command: list[str]

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class Mount:
    """A host directory bind-mounted into a container."""

    host_path: Path
    container_path: str
    read_only: bool = False

    def to_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.host_path}:{self.container_path}{suffix}"


@dataclass(frozen=True)
class ContainerLimits:
    """Resource caps for one container.

    ``memory`` also caps swap, so a worker can never overcommit memory.
    ``cpus`` is None for categories that do not tolerate partial cores.
    """

    memory: str
    cpus: str | None = None

    def to_args(self) -> list[str]:
        args: list[str] = []
        if self.cpus is not None:
            args.append(f"--cpus={self.cpus}")
        args.extend(["-m", self.memory, "--memory-swap", self.memory])
        return args


class DockerCli:
    """Runs docker CLI subcommands.

    Attributes:
        docker_bin: Name or path of the docker executable.
        timeout: Timeout for short-lived commands. None disables it.
    """

    def __init__(
        self,
        docker_bin: str = DEFAULT_DOCKER_BIN,
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT_SEC,
    ) -> None:
        self._docker_bin = docker_bin
        self._timeout = timeout

    @property
    def docker_bin(self) -> str:
        return self._docker_bin

    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> DockerResult:
        cmd = [self._docker_bin, *args]
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except FileNotFoundError as e:
            raise DockerCommandError(cmd, 127, f"{self._docker_bin} not found") from e
        except subprocess.TimeoutExpired as e:
            raise DockerCommandError(cmd, -1, "timed out") from e
        return DockerResult(
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            command=cmd,
        )

    def _check(self, args: Sequence[str], *, timeout: float | None = None) -> DockerResult:
        result = self._run(args, timeout=timeout)
        if not result.success:
            raise DockerCommandError(result.command, result.returncode, result.stderr)
        return result

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def image_exists(self, image: str) -> bool:
        result = self._run(["images", "-q", image])
        return result.success and bool(result.stdout.strip())

    def pull(self, image: str) -> bool:
        return self._run(["pull", "-q", image], timeout=None).success

    def build(self, image: str, dockerfile: Path, context_dir: Path) -> DockerResult:
        """Build an image. No timeout; build failures are returned, not raised."""
        return self._run(
            ["build", "-t", image, "-f", str(dockerfile), str(context_dir)],
            timeout=None,
        )

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def run_detached(
        self,
        image: str,
        name: str,
        *,
        limits: ContainerLimits,
        env: Mapping[str, str] | None = None,
        mounts: Iterable[Mount] = (),
        command: Sequence[str] = ("sleep", "infinity"),
    ) -> str:
        """Start a detached, self-removing container and return its id.

        Raises:
            DockerCommandError: If docker cannot create or start it.
        """
        args = ["run", "--name", name, "-d", "--rm", *limits.to_args()]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        for mount in mounts:
            args.extend(["-v", mount.to_arg()])
        args.extend([image, *command])
        result = self._check(args)
        return result.stdout.strip()

    @staticmethod
    def _exec_args(container: str, command: Sequence[str], user: str | None) -> list[str]:
        args = ["exec"]
        if user:
            args.extend(["--user", user])
        args.extend([container, *command])
        return args

    def exec_argv(
        self,
        container: str,
        command: Sequence[str],
        *,
        user: str | None = None,
    ) -> list[str]:
        """Build a ``docker exec`` argv without running it."""
        return [self._docker_bin, *self._exec_args(container, command, user)]

    def exec(self, container: str, command: Sequence[str], *, user: str | None = None) -> DockerResult:
        """Run a short command in a container and wait for it."""
        return self._check(self._exec_args(container, command, user))

    def inspect(self, container: str) -> DockerResult:
        return self._run(["inspect", container])

    def logs(self, container: str, *, tail: int | None = None) -> DockerResult:
        args = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(container)
        return self._run(args)

    def ps_all(self) -> DockerResult:
        return self._run(["ps", "-a"])

    def info(self) -> DockerResult:
        return self._run(["info"])

    def copy_from(self, container: str, source: str, dest: Path) -> bool:
        """Copy ``container:source`` to ``dest``. Returns False if absent."""
        return self._run(["cp", f"{container}:{source}", str(dest)], timeout=None).success

    def stop(self, container: str) -> bool:
        return self._run(["stop", container]).success

    def remove(self, container: str) -> bool:
        return self._run(["rm", "--force", container]).success

    def is_available(self) -> bool:
        """True if the docker daemon answers ``docker info``."""
        try:
            return self.info().success
        except DockerCommandError:
            return False


__all__ = [
    "DEFAULT_DOCKER_BIN",
    "ContainerLimits",
    "DockerCli",
    "DockerResult",
    "Mount",
]
