"""Tests for split descriptors and the split planner.

This module tests:
- K/N parsing and validation
- Inner split planning (the no-op case and subdivision)
- Partition completeness and exclusivity over concrete lists
- Selections that are name patterns rather than K/N
"""
from __future__ import annotations

import pytest

from split_runner.errors import InvalidSplitFormatError
from split_runner.splits import (
    SplitSpec,
    TestSelection,
    is_split_descriptor,
    plan_splits,
    select_slice,
    slice_bounds,
)

# =============================================================================
# SplitSpec
# =============================================================================


class TestSplitSpec:
    def test_parse(self) -> None:
        assert SplitSpec.parse("2/3") == SplitSpec(2, 3)
        assert SplitSpec.parse(" 1 / 1 ") == SplitSpec(1, 1)

    def test_str(self) -> None:
        assert str(SplitSpec(5, 12)) == "5/12"

    @pytest.mark.parametrize("text", ["", "3", "a/b", "1/2/3", "-1/3", "1.5/3", "1/"])
    def test_parse_rejects_malformed(self, text: str) -> None:
        with pytest.raises(InvalidSplitFormatError):
            SplitSpec.parse(text)

    @pytest.mark.parametrize("index,total", [(0, 3), (1, 0), (4, 3), (-1, 2)])
    def test_rejects_out_of_range(self, index: int, total: int) -> None:
        with pytest.raises(InvalidSplitFormatError):
            SplitSpec(index, total)

    def test_rejects_non_integers(self) -> None:
        with pytest.raises(InvalidSplitFormatError):
            SplitSpec(True, 2)  # type: ignore[arg-type]
        with pytest.raises(InvalidSplitFormatError):
            SplitSpec("1", 2)  # type: ignore[arg-type]

    def test_invalid_split_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            SplitSpec.parse("0/0")

    def test_is_split_descriptor(self) -> None:
        assert is_split_descriptor("3/4")
        assert not is_split_descriptor("CompactionTest")


# =============================================================================
# plan_splits
# =============================================================================


class TestPlanSplits:
    def test_subdivides_outer_chunk(self) -> None:
        """Outer 2/3 over 4 workers -> 5..8 of 12."""
        inner = plan_splits(SplitSpec(2, 3), 4)
        assert inner == [SplitSpec(i, 12) for i in (5, 6, 7, 8)]

    @pytest.mark.parametrize("outer", [SplitSpec(1, 1), SplitSpec(2, 3), SplitSpec(7, 7)])
    def test_single_worker_is_noop(self, outer: SplitSpec) -> None:
        assert plan_splits(outer, 1) == [outer]

    @pytest.mark.parametrize("count", [0, -2, True, 1.5])
    def test_rejects_bad_worker_count(self, count: object) -> None:
        with pytest.raises(ValueError):
            plan_splits(SplitSpec(1, 1), count)  # type: ignore[arg-type]

    def test_rejects_non_split_outer(self) -> None:
        with pytest.raises(InvalidSplitFormatError):
            plan_splits("2/3", 2)  # type: ignore[arg-type]

    def test_inner_specs_are_contiguous_and_ordered(self) -> None:
        for total in range(1, 6):
            for index in range(1, total + 1):
                for workers in range(1, 6):
                    inner = plan_splits(SplitSpec(index, total), workers)
                    assert len(inner) == workers
                    indices = [s.index for s in inner]
                    assert indices == list(range(indices[0], indices[0] + workers))
                    assert all(s.total == total * workers for s in inner)


class TestPartitionCompleteness:
    LENGTHS = (0, 1, 4, 7, 12, 30, 61)

    def test_slice_sizes_differ_by_at_most_one(self) -> None:
        for length in self.LENGTHS:
            for total in range(1, 9):
                sizes = [
                    len(select_slice(range(length), SplitSpec(i, total)))
                    for i in range(1, total + 1)
                ]
                assert sum(sizes) == length
                assert max(sizes) - min(sizes) <= 1

    def test_whole_list_reconstructed(self) -> None:
        items = [f"Test{i}" for i in range(23)]
        for total in range(1, 9):
            joined: list[str] = []
            for index in range(1, total + 1):
                joined.extend(select_slice(items, SplitSpec(index, total)))
            assert joined == items

    def test_inner_slices_cover_exactly_the_outer_slice(self) -> None:
        for length in self.LENGTHS:
            items = list(range(length))
            for total in range(1, 5):
                for index in range(1, total + 1):
                    outer = SplitSpec(index, total)
                    for workers in range(1, 5):
                        joined: list[int] = []
                        for spec in plan_splits(outer, workers):
                            joined.extend(select_slice(items, spec))
                        assert joined == select_slice(items, outer)

    def test_bounds_half_open(self) -> None:
        assert slice_bounds(SplitSpec(1, 3), 10) == (0, 3)
        assert slice_bounds(SplitSpec(2, 3), 10) == (3, 6)
        assert slice_bounds(SplitSpec(3, 3), 10) == (6, 10)

    def test_negative_length_rejected(self) -> None:
        with pytest.raises(ValueError):
            slice_bounds(SplitSpec(1, 1), -1)


# =============================================================================
# TestSelection
# =============================================================================


class TestTestSelection:
    @pytest.mark.parametrize("text", [None, "", "   "])
    def test_default_is_whole_list(self, text: str | None) -> None:
        selection = TestSelection.parse(text)
        assert selection.split == SplitSpec(1, 1)
        assert selection.splittable

    def test_split(self) -> None:
        selection = TestSelection.parse("2/3")
        assert selection.plan(4) == ["5/12", "6/12", "7/12", "8/12"]
        assert str(selection) == "2/3"

    def test_pattern_passes_through(self) -> None:
        selection = TestSelection.parse("org.apache.cassandra.db.Compaction*")
        assert not selection.splittable
        assert selection.pattern == "org.apache.cassandra.db.Compaction*"
        assert selection.plan(4) == ["org.apache.cassandra.db.Compaction*"]

    @pytest.mark.parametrize("text", ["0/3", "4/3", "3/", "/3"])
    def test_numeric_non_split_rejected(self, text: str) -> None:
        with pytest.raises(InvalidSplitFormatError):
            TestSelection.parse(text)

    def test_needs_exactly_one_kind(self) -> None:
        with pytest.raises(InvalidSplitFormatError):
            TestSelection()
        with pytest.raises(InvalidSplitFormatError):
            TestSelection(split=SplitSpec(1, 1), pattern="x")
