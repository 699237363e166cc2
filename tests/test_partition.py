"""Phase partition tests."""

from __future__ import annotations

import pytest

from algebrain.errors import InvalidArgument
from algebrain.partition import join, split


def test_split_preserves_relative_order() -> None:
    """Each side keeps the original batch order."""
    reading, writing = split([True, False, True, False], ["a", "b", "c", "d"])
    assert reading == ["a", "c"]
    assert writing == ["b", "d"]


@pytest.mark.parametrize(
    "flags",
    [[], [True], [False], [True, True, True], [False, False], [False, True, False, True, True]],
)
def test_join_inverts_split(flags: list[bool]) -> None:
    """join(flags, *split(flags, items)) returns the original list."""
    items = list(range(len(flags)))
    assert join(flags, *split(flags, items)) == items


def test_split_length_mismatch() -> None:
    """Flags and items must have the same length."""
    with pytest.raises(InvalidArgument, match="split"):
        split([True, False], [1])


def test_join_partition_size_mismatch() -> None:
    """join refuses partitions that don't match the flags."""
    with pytest.raises(InvalidArgument, match="join"):
        join([True, False], [1, 2], [])
