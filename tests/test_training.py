"""Optimizer construction, train steps and the run loop."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import jax
import jax.numpy as jnp
import pytest

from algebrain.block import DualPhaseBlock
from algebrain.codec import SymbolCodec
from algebrain.model import BLOCK_FILENAME, build_block, build_codec, load_block
from algebrain.train import (
    _weight_decay_mask,
    build_optimizer,
    run,
    sequence_gradient,
    train_step,
)
from algebrain.types import Sample
from algebrain.utils.io import CONFIG_FILENAME


def test_schedule_warms_up_from_zero(small_run_cfg) -> None:
    """The schedule starts at zero during warmup and peaks at optim.lr."""
    cfg, _ = small_run_cfg
    cfg = replace(cfg, train=replace(cfg.train, steps=20), optim=replace(cfg.optim, warmup_steps=5))
    block = build_block(cfg, key=jax.random.PRNGKey(0))
    _, schedule = build_optimizer(cfg, block.parameters())
    assert float(schedule(0)) == 0.0
    assert float(schedule(5)) == pytest.approx(cfg.optim.lr)
    assert float(schedule(20)) == pytest.approx(cfg.optim.lr * cfg.optim.min_lr_ratio, abs=1e-8)


def test_weight_decay_mask_skips_vectors(small_block: DualPhaseBlock) -> None:
    """Only matrices are decayed; biases and start states are not."""
    mask = _weight_decay_mask(small_block.parameters())
    assert mask.reader.head.weight is True
    assert mask.reader.head.bias is False
    assert mask.reader.init_state[0][0] is False


def test_train_steps_reduce_loss_on_one_sample(small_run_cfg) -> None:
    """Repeated updates on a single sample drive its loss down."""
    cfg, _ = small_run_cfg
    cfg = replace(
        cfg,
        train=replace(cfg.train, steps=40),
        optim=replace(cfg.optim, lr=0.05, grad_clip_norm=0.0),
    )
    codec = build_codec(cfg)
    block = build_block(cfg, key=jax.random.PRNGKey(0))
    tx, _ = build_optimizer(cfg, block.parameters())
    opt_state = tx.init(block.parameters())
    batch = [Sample("5+3", "8")]

    losses = []
    for _ in range(30):
        block, opt_state, metrics = train_step(block, opt_state, batch, tx=tx, codec=codec)
        losses.append(metrics["loss"])
        assert metrics["grad_norm"] >= 0.0

    assert losses[-1] < losses[0] * 0.5


def test_train_step_keeps_block_structure(small_run_cfg) -> None:
    """An update returns a block with the same structure and terminator."""
    cfg, _ = small_run_cfg
    codec = SymbolCodec()
    block = build_block(cfg, key=jax.random.PRNGKey(1))
    tx, _ = build_optimizer(cfg, block.parameters())
    new_block, _, _ = train_step(
        block, tx.init(block.parameters()), [Sample("1", "1")], tx=tx, codec=codec
    )
    assert isinstance(new_block, DualPhaseBlock)
    assert new_block.terminator == block.terminator
    assert jax.tree_util.tree_structure(new_block) == jax.tree_util.tree_structure(block)
    assert not jnp.allclose(new_block.writer.head.weight, block.writer.head.weight)


def test_run_writes_metrics_config_and_block(small_run_cfg) -> None:
    """A smoke run leaves config, metrics, log file and block in the run dir."""
    cfg, config_path = small_run_cfg
    run_dir = run(cfg, config_path=str(config_path))

    assert run_dir == Path(cfg.logging.run_dir)
    assert (run_dir / CONFIG_FILENAME).exists()
    assert (run_dir / "config_original.yaml").exists()
    assert (run_dir / BLOCK_FILENAME).exists()
    assert (run_dir / "train.log").exists()

    rows = [json.loads(line) for line in (run_dir / "metrics.jsonl").read_text().splitlines()]
    assert [r["step"] for r in rows] == [1, 2]
    for row in rows:
        assert {"loss", "grad_norm", "lr", "samples_seen", "wall_time_s"} <= set(row)
        assert row["loss"] > 0
    assert rows[-1]["samples_seen"] == 2 * cfg.train.batch_size


def test_run_refuses_existing_run_dir(small_run_cfg) -> None:
    """Runs never clobber an existing directory."""
    cfg, _ = small_run_cfg
    Path(cfg.logging.run_dir).mkdir(parents=True)
    with pytest.raises(RuntimeError, match="already exists"):
        run(cfg)


def test_run_nan_check_aborts(small_run_cfg) -> None:
    """A non-finite loss stops training when debug.nan_check is on."""
    cfg, _ = small_run_cfg
    cfg = replace(cfg, optim=replace(cfg.optim, lr=float("inf")))
    with pytest.raises(RuntimeError, match="Non-finite loss"):
        run(cfg)


def test_train_step_reports_global_grad_norm(small_run_cfg) -> None:
    """grad_norm is the L2 norm over every gradient leaf."""
    cfg, _ = small_run_cfg
    codec = build_codec(cfg)
    block = build_block(cfg, key=jax.random.PRNGKey(2))
    tx, _ = build_optimizer(cfg, block.parameters())
    batch = [Sample("2*4", "8")]

    _, grads = sequence_gradient(block, batch, codec)
    expected = jnp.sqrt(sum(jnp.sum(g**2) for g in jax.tree_util.tree_leaves(grads)))
    _, _, metrics = train_step(block, tx.init(block.parameters()), batch, tx=tx, codec=codec)
    assert metrics["grad_norm"] == pytest.approx(float(expected), rel=1e-5)


def test_train_step_runs_with_dropout_and_returns_query_mode_block(
    small_run_cfg_factory, tmp_path: Path
) -> None:
    """Dropout is on while computing gradients and off in the updated block."""
    cfg, _ = small_run_cfg_factory(tmp_path, dropout=0.5)
    codec = build_codec(cfg)
    block = build_block(cfg, key=jax.random.PRNGKey(0))
    assert block.reader.dropout.inference is True
    tx, _ = build_optimizer(cfg, block.parameters())
    opt_state = tx.init(block.parameters())
    batch = [Sample("5+3", "8")]

    # Dropout is active during the update, so masks need a key.
    with pytest.raises(RuntimeError, match="key"):
        train_step(block, opt_state, batch, tx=tx, codec=codec)

    _, _, m1 = train_step(block, opt_state, batch, tx=tx, codec=codec, key=jax.random.PRNGKey(1))
    _, _, m2 = train_step(block, opt_state, batch, tx=tx, codec=codec, key=jax.random.PRNGKey(2))
    assert m1["loss"] != pytest.approx(m2["loss"], rel=1e-6)

    new_block, _, _ = train_step(
        block, opt_state, batch, tx=tx, codec=codec, key=jax.random.PRNGKey(1)
    )
    assert new_block.reader.dropout.inference is True
    assert new_block.writer.dropout.inference is True
    clean, _ = sequence_gradient(new_block, batch, codec)
    assert clean == pytest.approx(sequence_gradient(new_block, batch, codec)[0])


def test_run_with_dropout_saves_a_query_mode_block(small_run_cfg_factory, tmp_path: Path) -> None:
    """A dropout run trains with per-step keys and saves a usable block."""
    cfg, _ = small_run_cfg_factory(tmp_path, dropout=0.3)
    run_dir = run(cfg)
    block = load_block(run_dir / BLOCK_FILENAME, cfg)
    assert block.reader.dropout.p == pytest.approx(0.3)
    assert block.reader.dropout.inference is True
