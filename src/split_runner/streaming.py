"""Surface worker logs to the operator while workers run.

Each worker's combined output goes to its own log file. A LogStreamer
thread follows that file from the beginning, like ``tail -F``, and writes
every line to the operator's stream with a ``[target split]`` prefix.

Following ends when the worker's background task completes (and whatever
is left in the file has been drained), never on end-of-file: the file
keeps growing while the worker runs. Streaming is cosmetic; nothing waits
on it for correctness.
"""

from __future__ import annotations

import sys
import threading
import time
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from .launcher import WorkerJob

DEFAULT_POLL_INTERVAL_SEC = 0.2

# one writer at a time so prefixed lines from different workers never interleave
_WRITE_LOCK = threading.Lock()


def emit(text: str, out: TextIO | None = None) -> None:
    """Write ``text`` plus a newline to ``out`` as one block.

    Shares the followers' lock, so a multi-line report is never split by
    another worker's prefixed lines.
    """
    stream = out if out is not None else sys.stdout
    with _WRITE_LOCK:
        stream.write(f"{text}\n")
        stream.flush()


def follow(
    job: WorkerJob,
    out: TextIO | None = None,
    *,
    stop: threading.Event | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
) -> None:
    """Copy ``job``'s log to ``out`` until the job completes.

    Blocks. ``stop`` ends following early (after a final drain).
    """
    stream = out if out is not None else sys.stdout
    prefix = f"[{job.identity.label}] "

    def finished() -> bool:
        if stop is not None and stop.is_set():
            return True
        return job.task is None or job.task.done.is_set()

    def write(lines: list[str]) -> None:
        if not lines:
            return
        with _WRITE_LOCK:
            for line in lines:
                stream.write(prefix + line)
            stream.flush()

    path = job.log_path
    while not path.exists():
        if finished():
            return
        time.sleep(poll_interval)

    partial = ""
    with path.open("r", encoding="utf-8", errors="replace") as log_file:
        while True:
            # sample before reading so the last read happens after completion
            done = finished()
            chunk = log_file.read()
            if chunk:
                lines = (partial + chunk).splitlines(keepends=True)
                partial = "" if lines[-1].endswith("\n") else lines.pop()
                write(lines)
                continue
            if done:
                break
            time.sleep(poll_interval)

    if partial:
        write([partial + "\n"])


class LogStreamer:
    """Runs ``follow`` for one job on a daemon thread.

    Example:
        >>> streamer = LogStreamer(job).start()
        >>> code = job.task.wait()
        >>> streamer.join()
    """

    def __init__(
        self,
        job: WorkerJob,
        out: TextIO | None = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    ) -> None:
        self._job = job
        self._out = out
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=follow,
            args=(job, out),
            kwargs={"stop": self._stop, "poll_interval": poll_interval},
            name=f"follow-{job.id}",
            daemon=True,
        )

    @property
    def job(self) -> WorkerJob:
        return self._job

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> LogStreamer:
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> None:
        """Wait for following to end on its own (job completion)."""
        if self._thread.ident is not None:
            self._thread.join(timeout)

    def stop(self, timeout: float | None = 5.0) -> None:
        """End following now, after draining what is already written."""
        self._stop.set()
        self.join(timeout)


__all__ = [
    "DEFAULT_POLL_INTERVAL_SEC",
    "LogStreamer",
    "emit",
    "follow",
]
