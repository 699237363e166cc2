"""Symbol codec tests."""

from __future__ import annotations

import jax.numpy as jnp
import pytest

from algebrain.codec import CHAR_COUNT, TERMINATOR, SymbolCodec
from algebrain.errors import AlgebrainError, InvalidArgument, OutOfRangeSymbol


def test_defaults_match_module_constants() -> None:
    """The default codec uses the 128-symbol alphabet with terminator 0."""
    codec = SymbolCodec()
    assert codec.char_count == CHAR_COUNT == 128
    assert codec.terminator == TERMINATOR == 0


def test_encode_is_one_hot() -> None:
    """encode places a single 1.0 at the symbol index."""
    vec = SymbolCodec().encode(ord("5"))
    assert vec.shape == (128,)
    assert vec.dtype == jnp.float32
    assert float(vec.sum()) == 1.0
    assert float(vec[ord("5")]) == 1.0


@pytest.mark.parametrize("symbol", [-1, 128, 1000])
def test_encode_rejects_out_of_range(symbol: int) -> None:
    """Codes outside [0, char_count) raise OutOfRangeSymbol."""
    with pytest.raises(OutOfRangeSymbol) as excinfo:
        SymbolCodec().encode(symbol)
    assert excinfo.value.symbol == symbol
    assert isinstance(excinfo.value, ValueError)
    assert isinstance(excinfo.value, AlgebrainError)


def test_encode_text_is_strict() -> None:
    """A single unencodable character fails the whole text."""
    with pytest.raises(OutOfRangeSymbol):
        SymbolCodec().encode_text("xé")


def test_decode_round_trips_a_character() -> None:
    """decode_char inverts encode_char."""
    codec = SymbolCodec()
    assert codec.decode_char(codec.encode_char("+")) == "+"


def test_decode_ties_resolve_to_lowest_index() -> None:
    """argmax ties pick the first maximum."""
    vec = jnp.zeros((8,)).at[3].set(2.0).at[5].set(2.0)
    assert SymbolCodec(char_count=8).decode(vec) == 3


def test_terminator_vector_uses_configured_terminator() -> None:
    """A custom terminator is honoured end to end."""
    codec = SymbolCodec(char_count=8, terminator=7)
    assert codec.decode(codec.terminator_vector()) == 7


@pytest.mark.parametrize("kwargs", [{"char_count": 0}, {"char_count": 4, "terminator": 4}])
def test_invalid_codec_rejected(kwargs: dict[str, int]) -> None:
    """Non-positive alphabets and out-of-alphabet terminators raise InvalidArgument."""
    with pytest.raises(InvalidArgument):
        SymbolCodec(**kwargs)
