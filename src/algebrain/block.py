"""The dual-phase recurrent block.

One stateful unit that behaves as an encoder while consuming a query and as a
decoder afterwards. It owns two cells:

- ``reader``: steps every sequence still in `Phase.READING`
- ``writer``: steps every sequence in `Phase.WRITING`

Each step partitions the batch by phase, routes each partition to its cell,
and joins the results back into batch order. A sequence switches to writing
once it consumes an input whose terminator component is non-zero, and never
switches back.

Reverse mode (`step` / `PhaseStepResult.propagate_gradient`) and forward mode
(`step_forward` / `PhaseForwardStepResult.propagate_forward_gradient`) run the
same routing code; only the per-cell calls differ.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np

from algebrain.cells import EMPTY_RESULT, GradientAccumulator, RecurrentCell
from algebrain.codec import TERMINATOR
from algebrain.errors import InvalidArgument, PartitionMismatch
from algebrain.partition import join, split
from algebrain.types import Dual, Phase, PhaseState


@dataclass
class PhaseStepResult:
    """Result of one block step (reverse mode).

    Retains the phase partition and each sub-cell's own result so gradients
    can be routed back to the cell that produced each sequence's output.
    """

    reading: tuple[bool, ...]
    reader: Any
    writer: Any
    outputs: list[jax.Array]
    states: list[PhaseState]

    @property
    def n_reading(self) -> int:
        return sum(self.reading)

    @property
    def n_writing(self) -> int:
        return len(self.reading) - self.n_reading

    def _route_back(self, method: str, batched: Sequence[Sequence[Any] | None], **shared: Any) -> list[Any]:
        """Split per-sequence gradient lists, call ``method`` on each sub-result, join.

        ``None`` entries in ``batched`` are passed through to both sub-results.
        """
        read_args: list[Any] = []
        write_args: list[Any] = []
        for items in batched:
            if items is None:
                read_args.append(None)
                write_args.append(None)
                continue
            if len(items) != len(self.reading):
                raise PartitionMismatch(
                    f"{method}: got {len(items)} gradients for a step over "
                    f"{len(self.reading)} sequences"
                )
            r, w = split(self.reading, items)
            read_args.append(r)
            write_args.append(w)

        read_down: list[Any] = []
        write_down: list[Any] = []
        if self.n_reading:
            read_down = getattr(self.reader, method)(*read_args, **shared)
        if self.n_writing:
            write_down = getattr(self.writer, method)(*write_args, **shared)
        if len(read_down) != self.n_reading or len(write_down) != self.n_writing:
            raise PartitionMismatch(
                f"{method}: sub-cells returned {len(read_down)}/{len(write_down)} state "
                f"gradients for a {self.n_reading}/{self.n_writing} partition"
            )
        return join(self.reading, read_down, write_down)

    def propagate_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        state_grads: Sequence[Any] | None,
        accumulator: GradientAccumulator,
    ) -> list[Any]:
        """Back-propagate through this step.

        :param output_grads: d(loss)/d(output) per sequence, in batch order.
        :param state_grads: d(loss)/d(next inner state) per sequence, or ``None``.
        :param GradientAccumulator accumulator: Shared target for both cells'
            parameter gradients.
        :raises PartitionMismatch: If the gradient batch doesn't fit the
            recorded partition.
        :return list: d(loss)/d(inner input state) per sequence, in batch order.
        """
        return self._route_back(
            "propagate_gradient", (output_grads, state_grads), accumulator=accumulator
        )


@dataclass
class PhaseForwardStepResult(PhaseStepResult):
    """Result of one block step in forward mode."""

    output_tangents: list[jax.Array] | None = None

    def propagate_forward_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        output_grad_tangents: Sequence[jax.Array | None] | None,
        state_grads: Sequence[Dual | None] | None,
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> list[Dual]:
        """Forward-mode counterpart of `propagate_gradient`.

        :return list[Dual]: Inner input-state gradients with their directional
            derivatives, in batch order.
        """
        return self._route_back(
            "propagate_forward_gradient",
            (output_grads, output_grad_tangents, state_grads),
            tangent_accumulator=tangent_accumulator,
            accumulator=accumulator,
        )


class DualPhaseBlock(eqx.Module):
    """Reader/writer pair behind a single recurrent-block interface.

    Persistence only ever sees ``(reader, writer)``; the phase logic is code.
    """

    reader: RecurrentCell
    writer: RecurrentCell
    terminator: int = eqx.field(static=True, default=TERMINATOR)

    # -- start states ----------------------------------------------------------

    def start_state(self, batch_size: int) -> list[PhaseState]:
        """Every sequence starts reading, from the reader's start state."""
        return [
            PhaseState(inner=s, phase=Phase.READING)
            for s in self.reader.start_state(batch_size)
        ]

    def start_forward_state(self, batch_size: int, directions: Any = None) -> list[PhaseState]:
        """Like `start_state`, with inner states paired with their tangents.

        :param int batch_size: Number of sequences.
        :param directions: Block-shaped parameter tangent (``None`` = zero).
        """
        return [
            PhaseState(inner=s, phase=Phase.READING)
            for s in self.reader.start_forward_state(batch_size, _sub(directions, "reader"))
        ]

    def propagate_start(
        self, state_grads: Sequence[Any | None], accumulator: GradientAccumulator
    ) -> None:
        """Propagate first-step state gradients into the reader's start state."""
        self.reader.propagate_start(state_grads, accumulator)

    def propagate_start_forward(
        self,
        state_grads: Sequence[Dual | None],
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> None:
        self.reader.propagate_start_forward(state_grads, tangent_accumulator, accumulator)

    # -- stepping --------------------------------------------------------------

    def step(
        self,
        states: Sequence[PhaseState],
        inputs: Sequence[jax.Array],
        *,
        key: jax.Array | None = None,
    ) -> PhaseStepResult:
        """Apply the block to one timestep of a batch.

        An input whose terminator component is non-zero signals that the
        remaining timesteps of that sequence belong to the writer.

        :param states: Current phase state per sequence.
        :param inputs: Input vector per sequence.
        :param key: PRNG key for dropout, split between reader and writer.
            Only needed while dropout is enabled.
        :raises InvalidArgument: If ``states`` and ``inputs`` differ in length.
        :return PhaseStepResult: Outputs, next states, and gradient routing info.
        """
        k_read, k_write = _split_key(key)
        return self._route(
            states,
            inputs,
            values=inputs,
            read=lambda s, x: self.reader.step(s, x, key=k_read),
            write=lambda s, x: self.writer.step(s, x, key=k_write),
            result_cls=PhaseStepResult,
        )

    def step_forward(
        self,
        states: Sequence[PhaseState],
        inputs: Sequence[Dual],
        directions: Any = None,
        *,
        key: jax.Array | None = None,
    ) -> PhaseForwardStepResult:
        """Forward-mode `step`: inputs, states and outputs carry tangents.

        :param directions: Block-shaped parameter tangent (``None`` = zero).
        """
        read_dir = _sub(directions, "reader")
        write_dir = _sub(directions, "writer")
        k_read, k_write = _split_key(key)
        res = self._route(
            states,
            inputs,
            values=[x.value for x in inputs],
            read=lambda s, x: self.reader.step_forward(s, x, read_dir, key=k_read),
            write=lambda s, x: self.writer.step_forward(s, x, write_dir, key=k_write),
            result_cls=PhaseForwardStepResult,
        )
        res.output_tangents = join(
            res.reading, res.reader.output_tangents, res.writer.output_tangents
        )
        return res

    def _route(
        self,
        states: Sequence[PhaseState],
        inputs: Sequence[Any],
        *,
        values: Sequence[jax.Array],
        read: Callable[[list[Any], list[Any]], Any],
        write: Callable[[list[Any], list[Any]], Any],
        result_cls: type[PhaseStepResult],
    ) -> Any:
        """Partition by phase, step each non-empty partition, join back."""
        if len(states) != len(inputs):
            raise InvalidArgument(f"step: {len(states)} states but {len(inputs)} inputs")
        if not states:
            raise InvalidArgument("step: empty batch")

        reading = tuple(s.reading for s in states)
        read_s, write_s = split(reading, [s.inner for s in states])
        read_x, write_x = split(reading, inputs)

        # An empty partition must never reach a cell.
        read_res = read(read_s, read_x) if read_s else EMPTY_RESULT
        write_res = write(write_s, write_x) if write_s else EMPTY_RESULT

        inner = join(reading, read_res.states, write_res.states)
        terminated = self._terminated(values)
        next_states = [
            PhaseState(
                inner=s,
                phase=Phase.READING if (was_reading and not term) else Phase.WRITING,
            )
            for s, was_reading, term in zip(inner, reading, terminated)
        ]
        return result_cls(
            reading=reading,
            reader=read_res,
            writer=write_res,
            outputs=join(reading, read_res.outputs, write_res.outputs),
            states=next_states,
        )

    def _terminated(self, values: Sequence[jax.Array]) -> list[bool]:
        """True where the input's terminator component is non-zero."""
        column = jnp.stack([jnp.asarray(v)[self.terminator] for v in values])
        return [bool(t) for t in np.asarray(jax.device_get(column)) != 0]

    # -- training mode ---------------------------------------------------------

    def dropout(self, enabled: bool) -> DualPhaseBlock:
        """Return a copy with dropout switched on (training) or off (queries).

        Flips every ``inference`` flag inside both cells; cells without dropout
        layers are returned unchanged.
        """
        return eqx.nn.inference_mode(self, value=not enabled)

    # -- parameters ------------------------------------------------------------

    def parameters(self) -> Any:
        """Trainable arrays of both cells as a block-shaped pytree."""
        return eqx.filter(self, eqx.is_inexact_array)

    def gradient(self, accumulator: GradientAccumulator) -> Any:
        """Assemble a block-shaped gradient pytree from ``accumulator``.

        Matches the structure of `parameters`, so it can go straight into Optax.

        If the reader *is* the writer, both slots receive the same summed
        gradient. `eqx.apply_updates` then produces two equal but separate
        cells, so the sharing does not survive an optimizer step.
        """
        return eqx.filter(
            DualPhaseBlock(
                reader=accumulator.gradient_for(self.reader),
                writer=accumulator.gradient_for(self.writer),
                terminator=self.terminator,
            ),
            eqx.is_inexact_array,
        )


def _sub(directions: Any, name: str) -> Any:
    return None if directions is None else getattr(directions, name)


def _split_key(key: jax.Array | None) -> tuple[jax.Array | None, jax.Array | None]:
    if key is None:
        return None, None
    k_read, k_write = jax.random.split(key)
    return k_read, k_write
