"""Exception hierarchy for split-runner.

Preflight errors abort a run before any worker is launched. Per-worker
runtime failures are exit codes on the worker record, not exceptions.
"""

from __future__ import annotations


class SplitRunnerError(RuntimeError):
    """Base class for all split-runner errors."""


class ConfigError(SplitRunnerError):
    """Raised when a category table or run setting is invalid."""


class UnknownTargetError(SplitRunnerError):
    """Raised when a test target is not listed in any job category."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f'unrecognized target "{target}"')


class InsufficientResourcesError(SplitRunnerError):
    """Raised when the host cannot fit even one worker of a category."""

    def __init__(
        self,
        category: str,
        required_bytes: int,
        available_bytes: int,
        tenancy_factor: int,
    ) -> None:
        self.category = category
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.tenancy_factor = tenancy_factor
        super().__init__(
            f"{category} tests require minimum memory {required_bytes} bytes "
            f"(per tenant ({tenancy_factor})), found {available_bytes}"
        )


class InvalidSplitFormatError(SplitRunnerError, ValueError):
    """Raised when a K/N split descriptor is malformed."""


class DockerCommandError(SplitRunnerError):
    """Raised when a docker CLI invocation exits non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{' '.join(command[:3])} failed with exit code {returncode}{detail}")


class WorkerLaunchFailedError(SplitRunnerError):
    """Raised when a worker sandbox cannot be started."""

    def __init__(self, worker: str, reason: str, identity: object | None = None) -> None:
        self.worker = worker
        self.reason = reason
        self.identity = identity
        super().__init__(f"failed to launch worker {worker}: {reason}")


__all__ = [
    "ConfigError",
    "DockerCommandError",
    "InsufficientResourcesError",
    "InvalidSplitFormatError",
    "SplitRunnerError",
    "UnknownTargetError",
    "WorkerLaunchFailedError",
]
