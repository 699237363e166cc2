"""Recurrent cell contract + a generic differentiable implementation.

The dual-phase block composes two cells it knows nothing about beyond this
contract:

- ``start_state(batch_size)`` / ``start_forward_state(batch_size, directions)``
- ``step(states, inputs, *, key=None)`` -> `StepResult`
- ``step_forward(states, inputs, directions, *, key=None)`` -> `ForwardStepResult`
- ``propagate_start(...)`` / ``propagate_start_forward(...)``

Batches are lists (one item per sequence). Results keep whatever closure they
need so a later gradient call can run without re-supplying the forward inputs.

Modes:
- reverse: ``result.propagate_gradient(u, s, acc)`` returns state gradients and
  adds parameter gradients into ``acc``
- forward: values carry a directional derivative (`Dual`); propagation returns
  state gradients *and* their directional derivatives, adding the parameter
  gradient into ``acc`` and its directional derivative into ``tangent_acc``

`DifferentiableCell` implements the whole contract for any Equinox module that
defines a single-sequence ``__call__(state, x) -> (output, new_state)`` and a
learned ``init_state``. Reverse mode is ``jax.vjp``; forward mode is
``jax.jvp``; the forward-mode gradient is ``jax.jvp`` of the ``vjp``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import equinox as eqx
import jax
import jax.numpy as jnp

from algebrain.errors import InvalidArgument
from algebrain.types import Dual
from algebrain.utils.tree import tree_add, tree_stack, tree_unstack, tree_zeros_like


class StepResult(Protocol):
    """Reverse-mode result of one cell step over a batch."""

    outputs: list[jax.Array]
    states: list[Any]

    def propagate_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        state_grads: Sequence[Any] | None,
        accumulator: GradientAccumulator,
    ) -> list[Any]: ...


class ForwardStepResult(Protocol):
    """Forward-mode result: outputs and states carry directional derivatives."""

    outputs: list[jax.Array]
    output_tangents: list[jax.Array]
    states: list[Dual]

    def propagate_forward_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        output_grad_tangents: Sequence[jax.Array | None] | None,
        state_grads: Sequence[Dual | None] | None,
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> list[Dual]: ...


@runtime_checkable
class RecurrentCell(Protocol):
    """What the dual-phase block requires of its reader and writer."""

    def start_state(self, batch_size: int) -> list[Any]: ...

    def start_forward_state(self, batch_size: int, directions: Any = None) -> list[Dual]: ...

    def step(
        self, states: Sequence[Any], inputs: Sequence[jax.Array], *, key: jax.Array | None = None
    ) -> StepResult: ...

    def step_forward(
        self,
        states: Sequence[Dual],
        inputs: Sequence[Dual],
        directions: Any = None,
        *,
        key: jax.Array | None = None,
    ) -> ForwardStepResult: ...

    def propagate_start(
        self, state_grads: Sequence[Any | None], accumulator: GradientAccumulator
    ) -> None: ...

    def propagate_start_forward(
        self,
        state_grads: Sequence[Dual | None],
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> None: ...


class GradientAccumulator:
    """Sums parameter gradients per cell.

    Slots are keyed by cell identity, so a block whose reader *is* its writer
    accumulates both contributions into one slot. Each slot holds a pytree
    shaped like ``eqx.filter(cell, eqx.is_inexact_array)``.

    Not thread-safe: if sub-cells are ever stepped concurrently, give each
    branch its own accumulator and `merge` afterwards.
    """

    def __init__(self) -> None:
        self._slots: dict[int, tuple[Any, Any]] = {}

    def add(self, cell: Any, grads: Any) -> None:
        """Add ``grads`` into the slot for ``cell``."""
        key = id(cell)
        if key in self._slots:
            owner, total = self._slots[key]
            self._slots[key] = (owner, tree_add(total, grads))
        else:
            # Keep a reference to the owner so its id can't be recycled.
            self._slots[key] = (cell, grads)

    def merge(self, other: GradientAccumulator) -> None:
        for owner, grads in other._slots.values():
            self.add(owner, grads)

    def get(self, cell: Any) -> Any | None:
        slot = self._slots.get(id(cell))
        return None if slot is None else slot[1]

    def gradient_for(self, cell: Any) -> Any:
        """Accumulated gradient for ``cell``, or zeros if nothing was added."""
        grads = self.get(cell)
        if grads is None:
            return tree_zeros_like(eqx.filter(cell, eqx.is_inexact_array))
        return grads

    def __contains__(self, cell: Any) -> bool:
        return id(cell) in self._slots

    def __len__(self) -> int:
        return len(self._slots)


class _EmptyResult:
    """Stands in for a sub-cell that received no sequences this step.

    Serves both modes: no outputs, no states, no gradient.
    """

    @property
    def outputs(self) -> list[jax.Array]:
        return []

    @property
    def output_tangents(self) -> list[jax.Array]:
        return []

    @property
    def states(self) -> list[Any]:
        return []

    def propagate_gradient(self, output_grads, state_grads, accumulator) -> list[Any]:
        return []

    def propagate_forward_gradient(
        self, output_grads, output_grad_tangents, state_grads, tangent_accumulator, accumulator=None
    ) -> list[Dual]:
        return []

    def __repr__(self) -> str:
        return "EMPTY_RESULT"


EMPTY_RESULT = _EmptyResult()


# ------------------------------ Generic differentiable cell ----------------


def _apply_batch(
    params: Any, states: Any, inputs: jax.Array, keys: jax.Array | None, *, static: Any
) -> tuple[Any, Any]:
    """Vectorised single-sequence step: ``([B, ...] states, [B, D] inputs) -> (outputs, states)``.

    ``keys`` holds one PRNG key per sequence (or ``None``) for stochastic layers.
    """
    cell = eqx.combine(params, static)
    if keys is None:
        return jax.vmap(cell)(states, inputs)
    return jax.vmap(lambda s, x, k: cell(s, x, key=k))(states, inputs, keys)


def _sequence_keys(key: jax.Array | None, n: int) -> jax.Array | None:
    return None if key is None else jax.random.split(key, n)


def _check_batch(states: Sequence[Any], inputs: Sequence[Any]) -> int:
    if len(states) != len(inputs):
        raise InvalidArgument(f"step: {len(states)} states but {len(inputs)} inputs")
    if not states:
        raise InvalidArgument("step: cells must not be stepped on an empty batch")
    return len(states)


def _fill(items: Sequence[Any | None] | None, like: Sequence[Any], what: str) -> list[Any]:
    """Replace missing upstream gradients with zeros shaped like ``like``."""
    if items is None:
        return [tree_zeros_like(x) for x in like]
    if len(items) != len(like):
        raise InvalidArgument(f"expected {len(like)} {what}, got {len(items)}")
    return [tree_zeros_like(x) if g is None else g for g, x in zip(items, like)]


def _sum_batch(items: Sequence[Any]) -> Any:
    return jax.tree_util.tree_map(lambda x: jnp.sum(x, axis=0), tree_stack(items))


@dataclass
class CellStepResult:
    """Reverse-mode result of `DifferentiableCell.step`."""

    cell: Any
    outputs: list[jax.Array]
    states: list[Any]
    vjp_fn: Callable[[Any], tuple[Any, Any, Any]] = field(repr=False)

    def propagate_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        state_grads: Sequence[Any] | None,
        accumulator: GradientAccumulator,
    ) -> list[Any]:
        """Back-propagate upstream gradients through this step.

        :param output_grads: d(loss)/d(output) per sequence (``None`` = zero).
        :param state_grads: d(loss)/d(next state) per sequence, or ``None``.
        :param GradientAccumulator accumulator: Receives parameter gradients.
        :return list: d(loss)/d(input state) per sequence, in batch order.
        """
        u = _fill(output_grads, self.outputs, "output gradients")
        s = _fill(state_grads, self.states, "state gradients")
        d_params, d_states, _d_inputs = self.vjp_fn((jnp.stack(u), tree_stack(s)))
        accumulator.add(self.cell, d_params)
        return tree_unstack(d_states, len(self.outputs))


@dataclass
class CellForwardStepResult:
    """Forward-mode result of `DifferentiableCell.step_forward`.

    Keeps the primals and tangents of the step so the forward-mode gradient can
    be computed as the directional derivative of the reverse-mode gradient.
    """

    cell: Any
    outputs: list[jax.Array]
    output_tangents: list[jax.Array]
    states: list[Dual]
    primals: tuple[Any, Any, Any] = field(repr=False)
    tangents: tuple[Any, Any, Any] = field(repr=False)
    static: Any = field(repr=False)
    keys: jax.Array | None = field(default=None, repr=False)

    def propagate_forward_gradient(
        self,
        output_grads: Sequence[jax.Array | None],
        output_grad_tangents: Sequence[jax.Array | None] | None,
        state_grads: Sequence[Dual | None] | None,
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> list[Dual]:
        """Propagate gradients and their directional derivatives.

        :param output_grads: d(loss)/d(output) per sequence.
        :param output_grad_tangents: Directional derivatives of ``output_grads``.
        :param state_grads: Upstream state gradients as `Dual` (value, tangent).
        :param GradientAccumulator tangent_accumulator: Receives the directional
            derivative of the parameter gradient.
        :param accumulator: Optionally receives the parameter gradient itself.
        :return list[Dual]: Input-state gradients with their directional derivatives.
        """
        n = len(self.outputs)
        state_values = [d.value for d in self.states]
        state_tangents = [d.tangent for d in self.states]
        u = _fill(output_grads, self.outputs, "output gradients")
        u_t = _fill(output_grad_tangents, self.outputs, "output gradient tangents")
        if state_grads is None:
            state_grads = [None] * n
        s = _fill([None if g is None else g.value for g in state_grads], state_values, "state gradients")
        s_t = _fill(
            [None if g is None else g.tangent for g in state_grads], state_tangents, "state gradients"
        )

        static, keys = self.static, self.keys

        def grads(params, states, inputs, u_b, s_b):
            _, vjp_fn = jax.vjp(
                lambda p, st, x: _apply_batch(p, st, x, keys, static=static), params, states, inputs
            )
            d_params, d_states, _ = vjp_fn((u_b, s_b))
            return d_params, d_states

        (d_params, d_states), (r_params, r_states) = jax.jvp(
            grads,
            (*self.primals, jnp.stack(u), tree_stack(s)),
            (*self.tangents, jnp.stack(u_t), tree_stack(s_t)),
        )
        tangent_accumulator.add(self.cell, r_params)
        if accumulator is not None:
            accumulator.add(self.cell, d_params)
        return [
            Dual(value=v, tangent=t)
            for v, t in zip(tree_unstack(d_states, n), tree_unstack(r_states, n))
        ]


class DifferentiableCell(eqx.Module):
    """Base for cells defined by a single-sequence step function.

    Subclasses provide:
    - ``init_state``: learned start state (any pytree of arrays)
    - ``__call__(state, x, *, key=None) -> (output, new_state)`` for ONE
      sequence; ``key`` drives stochastic layers such as dropout

    Everything else (batching, reverse mode, forward mode, start-state
    gradients) is implemented here once.
    """

    def __call__(
        self, state: Any, x: jax.Array, *, key: jax.Array | None = None
    ) -> tuple[jax.Array, Any]:
        raise NotImplementedError

    # -- helpers -------------------------------------------------------------

    def _partition(self) -> tuple[Any, Any]:
        return eqx.partition(self, eqx.is_inexact_array)

    def _directions(self, directions: Any) -> Any:
        """Parameter-shaped tangent for forward mode (zeros when ``None``)."""
        params, _ = self._partition()
        if directions is None:
            return tree_zeros_like(params)
        return eqx.filter(directions, eqx.is_inexact_array)

    # -- reverse mode ----------------------------------------------------------

    def start_state(self, batch_size: int) -> list[Any]:
        return [self.init_state for _ in range(batch_size)]

    def step(
        self, states: Sequence[Any], inputs: Sequence[jax.Array], *, key: jax.Array | None = None
    ) -> CellStepResult:
        n = _check_batch(states, inputs)
        params, static = self._partition()
        keys = _sequence_keys(key, n)
        (outs, next_states), vjp_fn = jax.vjp(
            lambda p, st, x: _apply_batch(p, st, x, keys, static=static),
            params,
            tree_stack(states),
            jnp.stack(list(inputs)),
        )
        return CellStepResult(
            cell=self,
            outputs=[outs[i] for i in range(n)],
            states=tree_unstack(next_states, n),
            vjp_fn=vjp_fn,
        )

    def propagate_start(
        self, state_grads: Sequence[Any | None], accumulator: GradientAccumulator
    ) -> None:
        """Accumulate gradients reaching the (shared, learned) start state."""
        present = [g for g in state_grads if g is not None]
        if not present:
            return
        zeros = tree_zeros_like(self._partition()[0])
        accumulator.add(self, eqx.tree_at(lambda c: c.init_state, zeros, _sum_batch(present)))

    # -- forward mode ----------------------------------------------------------

    def start_forward_state(self, batch_size: int, directions: Any = None) -> list[Dual]:
        tangent = self._directions(directions).init_state
        return [Dual(value=self.init_state, tangent=tangent) for _ in range(batch_size)]

    def step_forward(
        self,
        states: Sequence[Dual],
        inputs: Sequence[Dual],
        directions: Any = None,
        *,
        key: jax.Array | None = None,
    ) -> CellForwardStepResult:
        n = _check_batch(states, inputs)
        params, static = self._partition()
        keys = _sequence_keys(key, n)
        primals = (
            params,
            tree_stack([s.value for s in states]),
            jnp.stack([x.value for x in inputs]),
        )
        tangents = (
            self._directions(directions),
            tree_stack([s.tangent for s in states]),
            jnp.stack([x.tangent for x in inputs]),
        )
        (outs, next_states), (outs_t, next_states_t) = jax.jvp(
            lambda p, st, x: _apply_batch(p, st, x, keys, static=static), primals, tangents
        )
        return CellForwardStepResult(
            cell=self,
            outputs=[outs[i] for i in range(n)],
            output_tangents=[outs_t[i] for i in range(n)],
            states=[
                Dual(value=v, tangent=t)
                for v, t in zip(tree_unstack(next_states, n), tree_unstack(next_states_t, n))
            ],
            primals=primals,
            tangents=tangents,
            static=static,
            keys=keys,
        )

    def propagate_start_forward(
        self,
        state_grads: Sequence[Dual | None],
        tangent_accumulator: GradientAccumulator,
        accumulator: GradientAccumulator | None = None,
    ) -> None:
        present = [g for g in state_grads if g is not None]
        if not present:
            return
        zeros = tree_zeros_like(self._partition()[0])
        tangent_accumulator.add(
            self, eqx.tree_at(lambda c: c.init_state, zeros, _sum_batch([g.tangent for g in present]))
        )
        if accumulator is not None:
            accumulator.add(
                self, eqx.tree_at(lambda c: c.init_state, zeros, _sum_batch([g.value for g in present]))
            )
