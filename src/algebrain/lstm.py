"""Stacked LSTM cell with a log-softmax symbol head.

This is the concrete cell the model builder plugs into both the reader and the
writer. It only defines the single-sequence step; batching and both
differentiation modes come from `DifferentiableCell`.
"""

from __future__ import annotations

from collections.abc import Sequence

import equinox as eqx
import jax
import jax.numpy as jnp

from algebrain.cells import DifferentiableCell

LSTMState = tuple[tuple[jax.Array, jax.Array], ...]


class LSTMCell(DifferentiableCell):
    """Stacked LSTM layers followed by a dense layer and log-softmax.

    State per sequence: one ``(h, c)`` pair per layer. The start state is
    learned (initialised to zeros). Each layer's hidden output passes through
    dropout before it feeds the next layer; the recurrent state itself is never
    dropped. Toggle dropout with `eqx.nn.inference_mode`.
    """

    layers: tuple[eqx.nn.LSTMCell, ...]
    dropout: eqx.nn.Dropout
    head: eqx.nn.Linear
    init_state: LSTMState
    input_size: int = eqx.field(static=True)
    output_size: int = eqx.field(static=True)

    def __init__(
        self,
        input_size: int,
        hidden_sizes: Sequence[int],
        output_size: int,
        *,
        dropout: float = 0.0,
        key: jax.Array,
    ):
        """Initialize the cell.

        :param int input_size: Width of each input vector.
        :param hidden_sizes: Hidden width of each LSTM layer (non-empty).
        :param int output_size: Width of the log-probability output.
        :param float dropout: Fraction of each layer's output zeroed in training mode.
        :param jax.Array key: PRNG key for initialization.
        """
        if not hidden_sizes:
            raise ValueError("LSTMCell needs at least one hidden layer")
        keys = jax.random.split(key, len(hidden_sizes) + 1)
        layers = []
        in_size = input_size
        for hidden, k in zip(hidden_sizes, keys[:-1]):
            layers.append(eqx.nn.LSTMCell(in_size, hidden, key=k))
            in_size = hidden
        self.layers = tuple(layers)
        self.dropout = eqx.nn.Dropout(dropout)
        self.head = eqx.nn.Linear(in_size, output_size, key=keys[-1])
        self.init_state = tuple(
            (jnp.zeros((hidden,), jnp.float32), jnp.zeros((hidden,), jnp.float32))
            for hidden in hidden_sizes
        )
        self.input_size = input_size
        self.output_size = output_size

    def __call__(
        self, state: LSTMState, x: jax.Array, *, key: jax.Array | None = None
    ) -> tuple[jax.Array, LSTMState]:
        if key is None:
            keys = [None] * len(self.layers)
        else:
            keys = list(jax.random.split(key, len(self.layers)))
        new_state = []
        h_in = x
        for layer, hc, k in zip(self.layers, state, keys):
            h, c = layer(h_in, hc)
            new_state.append((h, c))
            h_in = self.dropout(h, key=k)
        logits = self.head(h_in)
        return jax.nn.log_softmax(logits), tuple(new_state)
