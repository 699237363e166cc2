"""IO and pytree utilities."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import jax.numpy as jnp
import pytest

from algebrain.utils.io import (
    CONFIG_FILENAME,
    MetricsWriter,
    _ConsoleNoiseFilter,
    create_run_dir,
    load_run_config,
    setup_python_logging,
)
from algebrain.utils.tree import param_count, tree_allclose


def test_metrics_writer_appends_jsonl(tmp_path: Path) -> None:
    """Rows are appended one JSON object per line."""
    path = tmp_path / "m" / "metrics.jsonl"
    with MetricsWriter(path) as mw:
        mw.write({"step": 1, "loss": 2.5})
    with MetricsWriter(path) as mw:
        mw.write({"step": 2, "loss": 1.5})
    rows = [json.loads(line) for line in path.read_text().splitlines()]
    assert rows == [{"step": 1, "loss": 2.5}, {"step": 2, "loss": 1.5}]


def test_run_dir_config_round_trip(small_run_cfg) -> None:
    """The resolved config snapshot loads back to an equal Config."""
    cfg, config_path = small_run_cfg
    run_dir = create_run_dir(cfg, config_path=config_path)
    assert json.loads((run_dir / CONFIG_FILENAME).read_text())["train"]["steps"] == cfg.train.steps
    assert load_run_config(run_dir) == cfg


def test_load_run_config_errors(tmp_path: Path) -> None:
    """Missing and corrupted snapshots are reported distinctly."""
    with pytest.raises(FileNotFoundError):
        load_run_config(tmp_path)
    (tmp_path / CONFIG_FILENAME).write_text("{not json")
    with pytest.raises(ValueError, match="Corrupted"):
        load_run_config(tmp_path)


def test_default_run_dir_is_stamped(tmp_path: Path, small_run_cfg, monkeypatch) -> None:
    """Without logging.run_dir a stamped directory is created under runs/<project>."""
    cfg, _ = small_run_cfg
    monkeypatch.chdir(tmp_path)
    run_dir = create_run_dir(replace(cfg, logging=replace(cfg.logging, run_dir=None)), config_path=None)
    assert run_dir.parent == Path("runs") / cfg.logging.project
    assert run_dir.name.endswith("_run")


def test_console_filter_hides_third_party_info() -> None:
    """jax/absl INFO records are filtered; warnings and our own logs pass."""
    filt = _ConsoleNoiseFilter()

    def record(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "msg", None, None)

    assert not filt.filter(record("jax._src.xla_bridge", logging.INFO))
    assert filt.filter(record("absl", logging.WARNING))
    assert filt.filter(record("algebrain.train", logging.INFO))


def test_setup_python_logging_replaces_handlers() -> None:
    """Repeated setup leaves exactly one console handler on the root logger."""
    setup_python_logging("DEBUG", use_rich=False)
    setup_python_logging("WARNING", use_rich=True)
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING


def test_param_count_and_allclose() -> None:
    """param_count sums leaf sizes; tree_allclose checks structure and values."""
    tree = {"a": jnp.zeros((2, 3)), "b": (jnp.ones((4,)), None)}
    assert param_count(tree) == 10
    assert tree_allclose(tree, tree)
    assert not tree_allclose(tree, {"a": jnp.zeros((2, 3))})
    assert not tree_allclose({"a": jnp.zeros(2)}, {"a": jnp.ones(2)})
