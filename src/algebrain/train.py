"""Training loop + back-propagation through time.

Design rules:
1) **Gradients come from the block's own protocol.** We unroll with
   `DualPhaseBlock.step`, then walk the step results backwards with
   `propagate_gradient` and finish with `propagate_start`. No separate
   "training-only" forward pass exists that could drift from inference.
2) **Variable-length batches.** A sequence leaves the batch once its inputs run
   out; later timesteps step only the sequences still active.
3) **Loss.** Mean cross-entropy over writing timesteps. The cells emit
   log-probabilities, so d(loss)/d(output) is ``-target / count``.
4) **Dropout only while training.** `train_step` differentiates
   ``block.dropout(True)`` with a fresh key per step; saved and queried blocks
   keep dropout off.

Forward mode (`sequence_forward_gradient`) unrolls with `step_forward` and
returns the loss, its directional derivative, the gradient and the gradient's
directional derivative (a Hessian-vector product).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import optax
from tqdm import tqdm

from algebrain.block import DualPhaseBlock, PhaseStepResult
from algebrain.cells import GradientAccumulator
from algebrain.codec import SymbolCodec
from algebrain.config import Config, resolve_decay_duration
from algebrain.data import build_train_iterator
from algebrain.model import BLOCK_FILENAME, build_block, build_codec, save_block
from algebrain.runner import Runner
from algebrain.types import Dual, Sample
from algebrain.utils.io import MetricsWriter, add_file_logging, create_run_dir
from algebrain.utils.tree import param_count

logger = logging.getLogger(__name__)

_Step = tuple[list[int], PhaseStepResult, list[jax.Array | None]]


# ------------------------------ BPTT ---------------------------------------


def _unroll(
    samples: Sequence[Sample],
    codec: SymbolCodec,
    start_states: list[Any],
    step: Callable[..., PhaseStepResult],
    wrap_input: Callable[[jax.Array], Any],
    key: jax.Array | None = None,
) -> list[_Step]:
    """Run every sample through the block, recording (active, result, targets) per timestep.

    ``key`` (if given) is folded with the timestep so each step gets fresh dropout masks.
    """
    seqs = [s.training_sequences(codec) for s in samples]
    lengths = [len(inputs) for inputs, _ in seqs]
    states = list(start_states)
    history: list[_Step] = []
    for t in range(max(lengths)):
        active = [i for i, n in enumerate(lengths) if t < n]
        step_key = None if key is None else jax.random.fold_in(key, t)
        res = step(
            [states[i] for i in active],
            [wrap_input(seqs[i][0][t]) for i in active],
            key=step_key,
        )
        for j, i in enumerate(active):
            states[i] = res.states[j]
        history.append((active, res, [seqs[i][1][t] for i in active]))
    return history


def _target_count(history: list[_Step]) -> int:
    return sum(1 for _, _, targets in history for tg in targets if tg is not None)


def _loss(history: list[_Step], count: int, outputs_of: Callable[[PhaseStepResult], list]) -> jax.Array:
    total = jnp.zeros((), jnp.float32)
    for _, res, targets in history:
        for out, tg in zip(outputs_of(res), targets):
            if tg is not None:
                total = total - jnp.vdot(tg, out)
    return total / count


def _output_grads(targets: list[jax.Array | None], count: int) -> list[jax.Array | None]:
    return [None if tg is None else -tg / count for tg in targets]


def sequence_gradient(
    block: DualPhaseBlock,
    samples: Sequence[Sample],
    codec: SymbolCodec,
    *,
    key: jax.Array | None = None,
) -> tuple[float, Any]:
    """Loss and block-shaped gradient for a batch of samples.

    :param DualPhaseBlock block: Block to differentiate, in whatever dropout
        mode the caller wants.
    :param samples: Non-empty batch of samples.
    :param SymbolCodec codec: Codec used to encode the samples.
    :param key: PRNG key for dropout. Required only when dropout is on.
    :return tuple: (mean cross-entropy, gradient pytree matching ``block.parameters()``).
    """
    if not samples:
        raise ValueError("sequence_gradient needs at least one sample")
    history = _unroll(
        samples, codec, block.start_state(len(samples)), block.step, lambda x: x, key
    )
    count = _target_count(history)
    loss = _loss(history, count, lambda r: r.outputs)

    acc = GradientAccumulator()
    state_grads: list[Any] = [None] * len(samples)
    for active, res, targets in reversed(history):
        down = res.propagate_gradient(
            _output_grads(targets, count), [state_grads[i] for i in active], acc
        )
        for j, i in enumerate(active):
            state_grads[i] = down[j]
    block.propagate_start(state_grads, acc)
    return float(loss), block.gradient(acc)


@dataclass(frozen=True)
class ForwardGradient:
    """Everything forward mode yields for one batch along ``directions``."""

    loss: float
    loss_tangent: float
    grads: Any
    grad_tangents: Any


def sequence_forward_gradient(
    block: DualPhaseBlock,
    samples: Sequence[Sample],
    codec: SymbolCodec,
    directions: Any,
    *,
    key: jax.Array | None = None,
) -> ForwardGradient:
    """Forward-mode counterpart of `sequence_gradient`.

    :param directions: Block-shaped parameter tangent (e.g. ``block.parameters()``
        structure with arbitrary values).
    :return ForwardGradient: Loss, its directional derivative, the gradient, and
        the gradient's directional derivative.
    """
    if not samples:
        raise ValueError("sequence_forward_gradient needs at least one sample")
    history = _unroll(
        samples,
        codec,
        block.start_forward_state(len(samples), directions),
        lambda s, x, key: block.step_forward(s, x, directions, key=key),
        lambda x: Dual(value=x, tangent=jnp.zeros_like(x)),
        key,
    )
    count = _target_count(history)
    loss = _loss(history, count, lambda r: r.outputs)
    loss_tangent = _loss(history, count, lambda r: r.output_tangents)

    acc = GradientAccumulator()
    tangent_acc = GradientAccumulator()
    state_grads: list[Any] = [None] * len(samples)
    for active, res, targets in reversed(history):
        # d(loss)/d(output) is constant, so its tangent is zero.
        down = res.propagate_forward_gradient(
            _output_grads(targets, count),
            None,
            [state_grads[i] for i in active],
            tangent_acc,
            acc,
        )
        for j, i in enumerate(active):
            state_grads[i] = down[j]
    block.propagate_start_forward(state_grads, tangent_acc, acc)
    return ForwardGradient(
        loss=float(loss),
        loss_tangent=float(loss_tangent),
        grads=block.gradient(acc),
        grad_tangents=block.gradient(tangent_acc),
    )


# ------------------------------ Optimizer -----------------------------------


def _weight_decay_mask(params: Any) -> Any:
    """Heuristic: apply weight decay to matrices (ndim >= 2), not to biases/start states."""

    def mask_one(x):
        if not hasattr(x, "ndim"):
            return False
        return x.ndim >= 2

    return jax.tree_util.tree_map(mask_one, params)


def build_optimizer(
    cfg: Config, params: Any
) -> tuple[optax.GradientTransformation, Callable[[jax.Array], jax.Array]]:
    """Create Optax optimizer + schedule function (for logging)."""

    schedule = optax.warmup_cosine_decay_schedule(
        init_value=0.0,
        peak_value=cfg.optim.lr,
        warmup_steps=cfg.optim.warmup_steps,
        decay_steps=cfg.optim.warmup_steps + resolve_decay_duration(cfg),
        end_value=cfg.optim.lr * cfg.optim.min_lr_ratio,
    )

    transforms = []
    if cfg.optim.grad_clip_norm and cfg.optim.grad_clip_norm > 0:
        transforms.append(optax.clip_by_global_norm(cfg.optim.grad_clip_norm))

    transforms.append(
        optax.adamw(
            learning_rate=schedule,
            b1=cfg.optim.adam_b1,
            b2=cfg.optim.adam_b2,
            eps=cfg.optim.adam_eps,
            weight_decay=cfg.optim.weight_decay,
            mask=_weight_decay_mask(params),
        )
    )

    return optax.chain(*transforms), schedule


def train_step(
    block: DualPhaseBlock,
    opt_state: Any,
    batch: Sequence[Sample],
    *,
    tx: optax.GradientTransformation,
    codec: SymbolCodec,
    key: jax.Array | None = None,
) -> tuple[DualPhaseBlock, Any, dict[str, float]]:
    """One optimizer update from one batch.

    Gradients are taken with dropout on; the returned block keeps the dropout
    mode ``block`` came in with.

    :param key: PRNG key for dropout masks. Needed when ``model.dropout > 0``.
    :return tuple: (updated block, new optimizer state, metrics).
    """
    loss, grads = sequence_gradient(block.dropout(True), batch, codec, key=key)
    updates, opt_state = tx.update(grads, opt_state, block.parameters())
    block = eqx.apply_updates(block, updates)
    metrics = {"loss": loss, "grad_norm": float(optax.tree_utils.tree_norm(grads))}
    return block, opt_state, metrics


def _log_samples(block: DualPhaseBlock, cfg: Config, codec: SymbolCodec) -> None:
    runner = Runner(block, codec, max_response_len=cfg.query.max_response_len)
    for q in cfg.train.sample_queries:
        logger.info("sample: %r -> %r", q, runner.query(q))


def run(cfg: Config, *, config_path: str | None = None) -> Path:
    """Run a training job and return the run directory.

    The run directory receives the resolved config, metrics.jsonl, the log
    file and ``block.eqx`` (saved every ``train.save_every`` steps and at the end).
    """

    run_dir = create_run_dir(cfg, config_path=config_path)
    if cfg.logging.log_file:
        add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)
    metrics_path = run_dir / cfg.logging.metrics_file
    block_path = run_dir / BLOCK_FILENAME

    codec = build_codec(cfg)
    key = jax.random.PRNGKey(cfg.train.seed)
    block = build_block(cfg, key=key)
    dropout_key = jax.random.fold_in(key, 1)
    logger.info("params: %s", f"{param_count(block.parameters()):,}")

    tx, schedule = build_optimizer(cfg, block.parameters())
    opt_state = tx.init(block.parameters())
    data_it = build_train_iterator(cfg, codec)

    t0 = time.perf_counter()
    samples_seen = 0
    with MetricsWriter(metrics_path) as mw:
        for step_i in tqdm(range(1, cfg.train.steps + 1), desc="train", dynamic_ncols=True):
            try:
                batch = next(data_it)
            except StopIteration:
                logger.info("data exhausted after %d steps; stopping early", step_i - 1)
                mw.write({"step": step_i - 1, "data_exhausted": True})
                break
            block, opt_state, metrics = train_step(
                block,
                opt_state,
                batch,
                tx=tx,
                codec=codec,
                key=jax.random.fold_in(dropout_key, step_i),
            )
            samples_seen += len(batch)

            if cfg.debug.nan_check:
                loss_f = metrics["loss"]
                if not (loss_f == loss_f) or loss_f in (float("inf"), float("-inf")):
                    raise RuntimeError(f"Non-finite loss at step {step_i}: {loss_f}")

            if step_i % cfg.train.log_every == 0:
                mw.write(
                    {
                        "step": step_i,
                        "loss": metrics["loss"],
                        "grad_norm": metrics["grad_norm"],
                        "lr": float(schedule(step_i - 1)),
                        "samples_seen": samples_seen,
                        "wall_time_s": time.perf_counter() - t0,
                    }
                )

            if cfg.train.save_every > 0 and step_i % cfg.train.save_every == 0:
                save_block(block_path, block)

            if cfg.train.sample_every > 0 and step_i % cfg.train.sample_every == 0:
                _log_samples(block, cfg, codec)

    save_block(block_path, block)
    logger.info("saved block to %s", block_path)
    return run_dir
