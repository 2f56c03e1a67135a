"""Split descriptors and the two-level split planner.

A split descriptor ``K/N`` names the K-th of N contiguous slices of an
ordered test list whose length is only known inside the worker. The caller
picks the outer chunk; the planner subdivides it into one inner chunk per
worker, so the same caller selection runs on hosts of any size:

    >>> plan_splits(SplitSpec(2, 3), 4)
    [SplitSpec(index=5, total=12), SplitSpec(index=6, total=12), SplitSpec(index=7, total=12), SplitSpec(index=8, total=12)]

A selection that is not ``K/N`` is a name pattern. It is passed through to
the worker unchanged and is never sub-split.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from .errors import InvalidSplitFormatError

if TYPE_CHECKING:
    from collections.abc import Sequence

T = TypeVar("T")

_SPLIT_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d+)\s*$")


@dataclass(frozen=True, order=True)
class SplitSpec:
    """The ``index``-th of ``total`` contiguous slices (1-based)."""

    index: int
    total: int

    def __post_init__(self) -> None:
        for name in ("index", "total"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidSplitFormatError(f"split {name} must be an integer, got {value!r}")
        if self.index < 1 or self.total < 1:
            raise InvalidSplitFormatError(f"split {self.index}/{self.total} must be positive")
        if self.index > self.total:
            raise InvalidSplitFormatError(
                f"split index {self.index} exceeds total {self.total}"
            )

    @classmethod
    def parse(cls, text: str) -> SplitSpec:
        """Parse a ``K/N`` descriptor.

        Raises:
            InvalidSplitFormatError: If ``text`` is not ``K/N`` with
                ``1 <= K <= N``.
        """
        match = _SPLIT_RE.match(text)
        if not match:
            raise InvalidSplitFormatError(f"split must be formatted K/N, got {text!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def whole(cls) -> SplitSpec:
        return cls(1, 1)

    def __str__(self) -> str:
        return f"{self.index}/{self.total}"


def is_split_descriptor(text: str) -> bool:
    """True if ``text`` looks like ``K/N`` (validity is checked by parse)."""
    return _SPLIT_RE.match(text) is not None


def plan_splits(outer: SplitSpec, worker_count: int) -> list[SplitSpec]:
    """Subdivide ``outer`` into ``worker_count`` contiguous inner slices.

    The inner total is ``outer.total * worker_count`` and the returned specs
    are the block ``(outer.index - 1) * w + 1 .. outer.index * w``. With one
    worker the result is exactly ``[outer]``.

    Raises:
        InvalidSplitFormatError: If ``outer`` is not a SplitSpec.
        ValueError: If ``worker_count`` is not a positive integer.
    """
    if not isinstance(outer, SplitSpec):
        raise InvalidSplitFormatError(f"expected a SplitSpec, got {outer!r}")
    if isinstance(worker_count, bool) or not isinstance(worker_count, int) or worker_count < 1:
        raise ValueError(f"worker_count must be a positive integer, got {worker_count!r}")
    if worker_count == 1:
        return [outer]

    inner_total = outer.total * worker_count
    first = (outer.index - 1) * worker_count + 1
    return [SplitSpec(first + i, inner_total) for i in range(worker_count)]


def slice_bounds(spec: SplitSpec, length: int) -> tuple[int, int]:
    """Half-open ``[start, stop)`` bounds of ``spec`` over ``length`` items.

    Bounds are ``floor((K-1) * length / N)`` and ``floor(K * length / N)``, so
    slice sizes differ by at most one and the slices of a planned inner
    block together cover exactly the outer slice they came from.
    """
    if length < 0:
        raise ValueError("length must be >= 0")
    start = (spec.index - 1) * length // spec.total
    stop = spec.index * length // spec.total
    return start, stop


def select_slice(items: Sequence[T], spec: SplitSpec) -> list[T]:
    """Return the items covered by ``spec``."""
    start, stop = slice_bounds(spec, len(items))
    return list(items[start:stop])


@dataclass(frozen=True)
class TestSelection:
    """What the caller asked for: a K/N split or a name pattern."""

    __test__ = False  # not a pytest class

    split: SplitSpec | None = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        if (self.split is None) == (self.pattern is None):
            raise InvalidSplitFormatError("selection needs exactly one of split or pattern")

    @classmethod
    def parse(cls, text: str | None) -> TestSelection:
        """``None`` or empty means the whole list (``1/1``)."""
        if text is None or not text.strip():
            return cls(split=SplitSpec.whole())
        if is_split_descriptor(text):
            return cls(split=SplitSpec.parse(text))
        if "/" in text and re.fullmatch(r"[\d\s/+-]+", text):
            # looks numeric but is not K/N, e.g. "0/3" or "3/"
            raise InvalidSplitFormatError(f"split must be formatted K/N, got {text!r}")
        return cls(pattern=text)

    @property
    def splittable(self) -> bool:
        return self.split is not None

    def plan(self, worker_count: int) -> list[str]:
        """Per-worker selection arguments, in partition order."""
        if self.split is None:
            return [self.pattern or ""]
        return [str(s) for s in plan_splits(self.split, worker_count)]

    def __str__(self) -> str:
        return str(self.split) if self.split is not None else (self.pattern or "")


__all__ = [
    "SplitSpec",
    "TestSelection",
    "is_split_descriptor",
    "plan_splits",
    "select_slice",
    "slice_bounds",
]
