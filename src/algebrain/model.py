"""Model integration.

This file is the *only* place that knows how the reader and writer cells are
built and stored. The rest of the codebase talks in terms of:
- a `DualPhaseBlock` (reader + writer behind the phase logic)
- `block.parameters()` / `block.gradient(acc)` pytrees for the optimizer
- `block.dropout(enabled)` to switch between training and query behaviour

Persistence stores exactly the pair ``(reader, writer)`` via Equinox leaf
serialisation. The skeleton to load into is rebuilt from the run config, so a
saved block is only meaningful next to the config it was trained with.
"""

from __future__ import annotations

import logging
from pathlib import Path

import equinox as eqx
import jax

from algebrain.block import DualPhaseBlock
from algebrain.codec import SymbolCodec
from algebrain.config import Config
from algebrain.lstm import LSTMCell

logger = logging.getLogger(__name__)

BLOCK_FILENAME = "block.eqx"


def build_codec(cfg: Config) -> SymbolCodec:
    return SymbolCodec(char_count=cfg.codec.char_count, terminator=cfg.codec.terminator)


def build_block(cfg: Config, *, key: jax.Array) -> DualPhaseBlock:
    """Build a block with independently initialised reader and writer cells.

    The block comes back with dropout off; training switches it on per step.

    :param Config cfg: Model + codec configuration.
    :param jax.Array key: PRNG key for initialization.
    :raises ValueError: If model.backend is unknown.
    :return DualPhaseBlock: Fresh block.
    """
    if cfg.model.backend != "lstm":  # pragma: no cover
        raise ValueError(f"Unknown model.backend: {cfg.model.backend!r}")

    k_reader, k_writer = jax.random.split(key)
    width = cfg.codec.char_count
    reader = LSTMCell(width, cfg.model.hidden_sizes, width, dropout=cfg.model.dropout, key=k_reader)
    writer = LSTMCell(width, cfg.model.hidden_sizes, width, dropout=cfg.model.dropout, key=k_writer)
    block = DualPhaseBlock(reader=reader, writer=writer, terminator=cfg.codec.terminator)
    return block.dropout(False)


def save_block(path: str | Path, block: DualPhaseBlock) -> Path:
    """Serialise ``(reader, writer)`` to ``path``.

    :return Path: The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    eqx.tree_serialise_leaves(path, (block.reader, block.writer))
    logger.debug("Saved block to %s", path)
    return path


def load_block(path: str | Path, cfg: Config) -> DualPhaseBlock:
    """Load a block saved by `save_block`.

    :param path: File written by `save_block`.
    :param Config cfg: Config the block was built with (provides the skeleton).
    :raises FileNotFoundError: If ``path`` doesn't exist.
    :raises ValueError: If the saved shapes don't fit the configured model.
    :return DualPhaseBlock: Restored block, with dropout off.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Block file not found: {path}")
    skeleton = build_block(cfg, key=jax.random.PRNGKey(0))
    like = (skeleton.reader, skeleton.writer)
    reader, writer = eqx.tree_deserialise_leaves(path, like)
    got_leaves = jax.tree_util.tree_leaves(eqx.filter((reader, writer), eqx.is_array))
    want_leaves = jax.tree_util.tree_leaves(eqx.filter(like, eqx.is_array))
    for got, want in zip(got_leaves, want_leaves):
        if got.shape != want.shape:
            raise ValueError(
                f"{path} does not match the configured model: leaf shape {got.shape} != {want.shape}"
            )
    block = DualPhaseBlock(reader=reader, writer=writer, terminator=cfg.codec.terminator)
    return block.dropout(False)
