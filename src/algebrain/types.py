"""Core pytrees and shared types.

Keep this file small: it defines the **runtime contracts** between subsystems.

- `Phase` / `PhaseState` are the per-sequence state of the dual-phase block.
- `Dual` pairs a value with its directional derivative (forward mode).
- `Sample` is what the data pipeline yields and the trainer consumes.
- `Generator` is anything that produces fresh samples on demand.

**Batch contract**

A batch is a plain Python list where position ``i`` refers to logical
sequence ``i`` for inputs, states, outputs and gradients alike. Lists may hold
any pytree, which is what lets one partitioner serve every item kind.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import equinox as eqx
import jax

if TYPE_CHECKING:
    from algebrain.codec import SymbolCodec


class Phase(enum.Enum):
    """Per-sequence mode of the dual-phase block."""

    READING = "reading"
    WRITING = "writing"


class PhaseState(eqx.Module):
    """Phase tag wrapping an inner cell state.

    ``inner`` is a cell state in reverse mode, or a `Dual` of one in forward
    mode. The block replaces these every step; they are never mutated.
    """

    inner: Any
    phase: Phase = eqx.field(static=True, default=Phase.READING)

    @property
    def reading(self) -> bool:
        return self.phase is Phase.READING


class Dual(eqx.Module):
    """A value paired with its directional derivative.

    ``tangent`` has the same pytree structure as ``value``.
    """

    value: Any
    tangent: Any


@dataclass(frozen=True)
class Sample:
    """A query (e.g. ``"shift x by 2 in x^2+2"``) and its expected response."""

    query: str
    response: str

    def input_sequence(self, codec: SymbolCodec) -> list[jax.Array]:
        """Encoder input: one one-hot vector per query character."""
        return codec.encode_text(self.query)

    def decoder_out_sequence(self, codec: SymbolCodec) -> list[jax.Array]:
        """Desired decoder output: the response followed by a terminator."""
        return codec.encode_text(self.response) + [codec.terminator_vector()]

    def decoder_in_sequence(self, codec: SymbolCodec) -> list[jax.Array]:
        """Decoder input during training: the response shifted right by a terminator."""
        return [codec.terminator_vector()] + codec.encode_text(self.response)

    def training_sequences(
        self, codec: SymbolCodec
    ) -> tuple[list[jax.Array], list[jax.Array | None]]:
        """Full per-timestep inputs and aligned targets for one sequence.

        Inputs are ``query + [terminator] + decoder_in``: the reader consumes the
        terminator (switching the sequence to writing), then the writer starts
        from a terminator input, exactly as the runner does at inference time.
        Reading timesteps have no target (``None``).

        :param SymbolCodec codec: Codec used to encode characters.
        :raises OutOfRangeSymbol: If any character falls outside the alphabet.
        :return tuple: (inputs, targets) of equal length.
        """
        reading = self.input_sequence(codec) + [codec.terminator_vector()]
        inputs = reading + self.decoder_in_sequence(codec)
        targets: list[jax.Array | None] = [None] * len(reading)
        targets += self.decoder_out_sequence(codec)
        return inputs, targets


@runtime_checkable
class Generator(Protocol):
    """Source of training samples, one call per sample."""

    def generate(self) -> Sample: ...
