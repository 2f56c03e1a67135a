"""Host resource budgeting for worker admission.

This module answers one question per run: how many isolated workers can
the host carry for a given job category. The answer is derived from a
read-only ResourceBudget snapshot (cores, memory, tenancy factor) and the
category's per-worker memory floor.

Splittable categories are bounded twice:

- by cores: ``floor(sqrt(cpu_count / tenancy))``. Each worker parallelises
  internally, so dividing cores directly would over-commit the host.
- by memory: ``floor(memory / (min_memory * tenancy))``, a hard ceiling.

Single-worker categories only go through the memory preflight.
"""

from __future__ import annotations

import json
import logging
import math
import os
import subprocess
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import InsufficientResourcesError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .config import JobCategory

logger = logging.getLogger(__name__)

TENANCY_ENV_VAR = "SPLIT_RUNNER_TENANCY"
JENKINS_FETCH_RETRIES = 9
JENKINS_FETCH_TIMEOUT_SEC = 5.0


@dataclass(frozen=True)
class ResourceBudget:
    """Read-only snapshot of host resources taken once per run.

    Attributes:
        cpu_count: Logical cores on the host.
        memory_bytes: Physical memory on the host.
        tenancy_factor: Orchestrator instances expected to share the host.
    """

    cpu_count: int
    memory_bytes: int
    tenancy_factor: int = 1

    def __post_init__(self) -> None:
        if self.cpu_count < 1:
            raise ValueError("cpu_count must be >= 1")
        if self.memory_bytes < 1:
            raise ValueError("memory_bytes must be >= 1")
        if self.tenancy_factor < 1:
            raise ValueError("tenancy_factor must be >= 1")


def estimate_worker_count(category: JobCategory, budget: ResourceBudget) -> int:
    """Compute the maximum number of concurrent workers for a category.

    Splittable categories never fail here; a host below the memory floor
    still gets one worker.

    Raises:
        InsufficientResourcesError: If the category is single-worker and the
            host memory cannot fit it once per tenant.
    """
    required = category.min_memory_bytes * budget.tenancy_factor
    if not category.splittable:
        if budget.memory_bytes < required:
            raise InsufficientResourcesError(
                category.name,
                required_bytes=required,
                available_bytes=budget.memory_bytes,
                tenancy_factor=budget.tenancy_factor,
            )
        return 1

    # isqrt of the floored quotient equals floor(sqrt(cpu / tenancy))
    by_cores = math.isqrt(budget.cpu_count // budget.tenancy_factor)
    by_memory = budget.memory_bytes // required
    count = min(by_cores, by_memory)
    if category.max_workers is not None:
        count = min(count, category.max_workers)
    count = max(1, count)

    logger.debug(
        "%s: by_cores=%d by_memory=%d -> %d workers",
        category.name,
        by_cores,
        by_memory,
        count,
    )
    return count


def cpus_per_worker(budget: ResourceBudget, worker_count: int) -> str:
    """Docker ``--cpus`` share for each worker, truncated to two decimals."""
    if worker_count < 1:
        raise ValueError("worker_count must be >= 1")
    hundredths = (budget.cpu_count * 100) // (budget.tenancy_factor * worker_count)
    return f"{hundredths // 100}.{hundredths % 100:02d}"


# =============================================================================
# Host detection
# =============================================================================


def _total_ram_bytes() -> int | None:
    """Best-effort total physical RAM bytes (no external deps)."""
    # POSIX sysconf (Linux + many Unixes)
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
        if pages and page_size and pages > 0 and page_size > 0:
            return int(pages) * int(page_size)
    except (AttributeError, ValueError, OSError):
        pass

    # Linux /proc fallback
    meminfo = Path("/proc/meminfo")
    try:
        if meminfo.exists():
            for line in meminfo.read_text(encoding="utf-8").splitlines():
                if line.startswith("MemTotal:"):
                    # kB
                    return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError):
        pass

    # macOS
    try:
        proc = subprocess.run(
            ["sysctl", "-n", "hw.memsize"],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
        if proc.returncode == 0 and proc.stdout.strip().isdigit():
            return int(proc.stdout.strip())
    except (OSError, subprocess.TimeoutExpired):
        pass

    return None


def detect_host_budget(tenancy_factor: int = 1) -> ResourceBudget:
    """Snapshot the host's cores and memory."""
    cores = os.cpu_count() or 1
    memory = _total_ram_bytes()
    if memory is None:
        logger.warning("Could not determine host memory; assuming 1 byte")
        memory = 1
    budget = ResourceBudget(cpu_count=cores, memory_bytes=memory, tenancy_factor=tenancy_factor)
    logger.info(
        "Host budget: %d cores, %d bytes memory, tenancy %d",
        budget.cpu_count,
        budget.memory_bytes,
        budget.tenancy_factor,
    )
    return budget


def _fetch_jenkins_executors(jenkins_url: str, node_name: str, retries: int) -> int | None:
    url = f"{jenkins_url.rstrip('/')}/computer/{node_name}/api/json"
    for attempt in range(retries + 1):
        try:
            with urllib.request.urlopen(url, timeout=JENKINS_FETCH_TIMEOUT_SEC) as resp:
                data = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.debug("Jenkins executor lookup attempt %d failed: %s", attempt + 1, e)
            if attempt < retries:
                time.sleep(1)
            continue
        executors = data.get("numExecutors") if isinstance(data, dict) else None
        if isinstance(executors, int) and not isinstance(executors, bool) and executors >= 1:
            return executors
        return None
    return None


def detect_tenancy_factor(
    env: Mapping[str, str] | None = None,
    *,
    retries: int = JENKINS_FETCH_RETRIES,
) -> int:
    """Number of orchestrator instances expected to share this host.

    SPLIT_RUNNER_TENANCY wins when set. On a Jenkins agent (JENKINS_URL and
    NODE_NAME set) the node's executor count is used. Anything else is 1.
    """
    env = os.environ if env is None else env

    raw = env.get(TENANCY_ENV_VAR, "").strip()
    if raw:
        if raw.isdigit() and int(raw) >= 1:
            return int(raw)
        logger.warning("Ignoring invalid %s=%r", TENANCY_ENV_VAR, raw)

    jenkins_url = env.get("JENKINS_URL")
    node_name = env.get("NODE_NAME")
    if jenkins_url and node_name:
        executors = _fetch_jenkins_executors(jenkins_url, node_name, retries)
        if executors is not None:
            return executors
        logger.warning("Could not fetch Jenkins executor count; assuming 1")
    return 1


__all__ = [
    "TENANCY_ENV_VAR",
    "ResourceBudget",
    "cpus_per_worker",
    "detect_host_budget",
    "detect_tenancy_factor",
    "estimate_worker_count",
]
