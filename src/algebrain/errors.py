"""Error taxonomy for algebrain.

Everything raised on purpose by library code derives from `AlgebrainError`, so
callers can catch the whole family. Each concrete error also derives from the
builtin it is closest to (ValueError / RuntimeError) so generic handlers keep
working.
"""

from __future__ import annotations


class AlgebrainError(Exception):
    """Base class for all algebrain errors."""


class OutOfRangeSymbol(AlgebrainError, ValueError):
    """A symbol code outside ``[0, char_count)`` was passed to the codec."""

    def __init__(self, symbol: int, char_count: int):
        self.symbol = symbol
        self.char_count = char_count
        super().__init__(f"symbol {symbol!r} out of range [0, {char_count})")


class InvalidArgument(AlgebrainError, ValueError):
    """A precondition on arguments was violated (e.g. mismatched batch lengths)."""


class PartitionMismatch(AlgebrainError, RuntimeError):
    """Gradient routing no longer matches the forward-pass phase partition.

    This is an internal invariant violation: the value path and the gradient
    path have drifted apart. Never catch and continue.
    """
