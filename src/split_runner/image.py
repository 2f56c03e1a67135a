"""Worker image acquisition.

The worker image is named after its dockerfile and tagged with the md5 of
the dockerfile contents, so any change to the dockerfile produces a new
tag. A local image is used as-is, otherwise a pull is attempted, and only
then is the image built. Builds are retried with a fixed delay; launch
failures are not this module's concern.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import SplitRunnerError

if TYPE_CHECKING:
    from .docker import DockerCli

logger = logging.getLogger(__name__)

IMAGE_REPOSITORY_PREFIX = "apache/cassandra-"


class ImageBuildFailedError(SplitRunnerError):
    """Raised when a bounded number of build attempts all fail."""


def image_tag(dockerfile: Path) -> str:
    return hashlib.md5(dockerfile.read_bytes(), usedforsecurity=False).hexdigest()


def image_name(dockerfile: Path) -> str:
    """E.g. ``apache/cassandra-ubuntu2004_test:<md5>``."""
    return f"{IMAGE_REPOSITORY_PREFIX}{dockerfile.stem}:{image_tag(dockerfile)}"


def ensure_worker_image(
    docker: DockerCli,
    dockerfile: Path,
    context_dir: Path,
    *,
    retry_delay_sec: float = 10.0,
    max_attempts: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Make the worker image available locally and return its name.

    Args:
        docker: Docker CLI wrapper.
        dockerfile: Dockerfile the image is built from.
        context_dir: Build context directory.
        retry_delay_sec: Delay between failed builds.
        max_attempts: Give up after this many builds. None retries forever.
        sleep: Sleep function (injectable for tests).

    Raises:
        FileNotFoundError: If the dockerfile does not exist.
        ImageBuildFailedError: If ``max_attempts`` builds all fail.
    """
    if not dockerfile.is_file():
        raise FileNotFoundError(f"dockerfile not found: {dockerfile}")

    name = image_name(dockerfile)
    if docker.image_exists(name):
        logger.info("Using local image %s", name)
        return name
    if docker.pull(name):
        logger.info("Pulled image %s", name)
        return name

    attempt = 0
    while True:
        attempt += 1
        result = docker.build(name, dockerfile, context_dir)
        if result.success:
            logger.info("Built image %s", name)
            return name
        if max_attempts is not None and attempt >= max_attempts:
            raise ImageBuildFailedError(
                f"docker build of {name} failed {attempt} times: {result.stderr.strip()}"
            )
        logger.warning(
            "docker build failed (attempt %d)… trying again in %ss",
            attempt,
            f"{retry_delay_sec:g}",
        )
        sleep(retry_delay_sec)


__all__ = [
    "ImageBuildFailedError",
    "ensure_worker_image",
    "image_name",
    "image_tag",
]
