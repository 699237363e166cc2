"""Test session configuration."""

from __future__ import annotations

import os

# Tests run on CPU and should not grab all accelerator memory.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

from collections.abc import Callable  # noqa: E402
from pathlib import Path  # noqa: E402

import jax  # noqa: E402
import pytest  # noqa: E402

from algebrain.block import DualPhaseBlock  # noqa: E402
from algebrain.codec import SymbolCodec  # noqa: E402
from algebrain.config import Config  # noqa: E402
from algebrain.lstm import LSTMCell  # noqa: E402
from tests.helpers.config_factories import make_small_run_cfg  # noqa: E402


@pytest.fixture
def codec() -> SymbolCodec:
    """Default 128-symbol codec with terminator 0."""
    return SymbolCodec()


@pytest.fixture
def small_block() -> DualPhaseBlock:
    """Reader/writer LSTM block over the full alphabet with a tiny hidden layer."""
    k_reader, k_writer = jax.random.split(jax.random.PRNGKey(0))
    return DualPhaseBlock(
        reader=LSTMCell(128, (8,), 128, key=k_reader),
        writer=LSTMCell(128, (8,), 128, key=k_writer),
    )


@pytest.fixture
def small_run_cfg_factory() -> Callable[..., tuple[Config, Path]]:
    """Expose the shared small-run config factory."""
    return make_small_run_cfg


@pytest.fixture
def small_run_cfg(tmp_path: Path) -> tuple[Config, Path]:
    """Provide a smoke-sized run config tuple for tests."""
    return make_small_run_cfg(tmp_path)
