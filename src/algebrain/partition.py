"""Batch partitioning by phase.

The dual-phase block splits every per-sequence list (inputs, states, outputs,
gradients) into a reading part and a writing part, routes each part to its
cell, then joins the results back. Both operations are generic over the item
type and preserve relative order, so ``join(f, *split(f, x)) == x``.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

from algebrain.errors import InvalidArgument

T = TypeVar("T")


def split(flags: Sequence[bool], items: Sequence[T]) -> tuple[list[T], list[T]]:
    """Split ``items`` into (reading, writing) lists according to ``flags``.

    :param flags: ``True`` where the sequence is reading.
    :param items: Per-sequence items, same length as ``flags``.
    :raises InvalidArgument: If the lengths differ.
    :return tuple: (items where flag is True, items where flag is False).
    """
    if len(flags) != len(items):
        raise InvalidArgument(
            f"split: {len(flags)} phase flags but {len(items)} items"
        )
    reading: list[T] = []
    writing: list[T] = []
    for flag, item in zip(flags, items):
        (reading if flag else writing).append(item)
    return reading, writing


def join(flags: Sequence[bool], reading: Sequence[T], writing: Sequence[T]) -> list[T]:
    """Inverse of `split`: interleave the two lists back into batch order.

    :raises InvalidArgument: If the partition sizes don't match ``flags``.
    """
    n_reading = sum(1 for f in flags if f)
    if n_reading != len(reading) or len(flags) - n_reading != len(writing):
        raise InvalidArgument(
            f"join: flags select {n_reading} reading / {len(flags) - n_reading} writing, "
            f"got {len(reading)} / {len(writing)} items"
        )
    read_it = iter(reading)
    write_it = iter(writing)
    return [next(read_it) if flag else next(write_it) for flag in flags]
