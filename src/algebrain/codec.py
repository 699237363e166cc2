"""Symbol codec: characters <-> one-hot vectors.

The alphabet size and the reserved terminator are carried by the codec instance
rather than being module globals, so tests can use tiny alphabets.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp

from algebrain.errors import InvalidArgument, OutOfRangeSymbol

CHAR_COUNT = 128
TERMINATOR = 0


@dataclass(frozen=True)
class SymbolCodec:
    """Fixed-width one-hot encoding over ``char_count`` symbols.

    Symbol ``terminator`` marks the read->write transition on input and the end
    of the response on output.
    """

    char_count: int = CHAR_COUNT
    terminator: int = TERMINATOR

    def __post_init__(self) -> None:
        if self.char_count <= 0:
            raise InvalidArgument(f"char_count must be positive, got {self.char_count}")
        if not (0 <= self.terminator < self.char_count):
            raise InvalidArgument(
                f"terminator {self.terminator} must be within [0, {self.char_count})"
            )

    def in_range(self, symbol: int) -> bool:
        return 0 <= symbol < self.char_count

    def encode(self, symbol: int) -> jax.Array:
        """One-hot encode a symbol code.

        :param int symbol: Symbol code.
        :raises OutOfRangeSymbol: If the code is outside ``[0, char_count)``.
        :return jax.Array: float32 vector of shape ``[char_count]``.
        """
        symbol = int(symbol)
        if not self.in_range(symbol):
            raise OutOfRangeSymbol(symbol, self.char_count)
        return jnp.zeros((self.char_count,), dtype=jnp.float32).at[symbol].set(1.0)

    def encode_char(self, ch: str) -> jax.Array:
        """One-hot encode a single character by its code point."""
        return self.encode(ord(ch))

    def encode_text(self, text: str) -> list[jax.Array]:
        """Strictly encode every character of ``text``."""
        return [self.encode_char(ch) for ch in text]

    def terminator_vector(self) -> jax.Array:
        return self.encode(self.terminator)

    def decode(self, vector: jax.Array) -> int:
        """Return the index of the largest component.

        Ties resolve to the lowest index (``argmax`` returns the first maximum).
        """
        return int(jnp.argmax(jnp.asarray(vector)))

    def decode_char(self, vector: jax.Array) -> str:
        return chr(self.decode(vector))
