"""Shared config builders for integration-style tests."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from algebrain.config import Config, load_config

SMOKE_CONFIG = Path(__file__).resolve().parents[2] / "configs" / "debug_smoke.yaml"


def make_small_run_cfg(
    tmp_path: Path,
    *,
    run_subdir: str = "run",
    steps: int = 2,
    hidden_sizes: tuple[int, ...] = (8,),
    dropout: float = 0.0,
) -> tuple[Config, Path]:
    """Build a tiny inline-data config for fast train/persistence tests.

    :param Path tmp_path: Temporary directory provided by pytest.
    :param str run_subdir: Name of the run subdirectory under tmp_path.
    :param int steps: Number of optimizer steps.
    :param hidden_sizes: LSTM hidden widths.
    :param float dropout: Dropout rate for both cells.
    :return tuple[Config, Path]: (cfg, config_path) for smoke-sized training runs.
    """
    cfg = load_config(str(SMOKE_CONFIG))
    cfg = replace(
        cfg,
        model=replace(cfg.model, hidden_sizes=hidden_sizes, dropout=dropout),
        train=replace(
            cfg.train,
            steps=steps,
            batch_size=2,
            log_every=1,
            save_every=1,
            sample_every=1,
        ),
        optim=replace(cfg.optim, warmup_steps=0),
        logging=replace(
            cfg.logging,
            run_dir=str(tmp_path / run_subdir),
            console_use_rich=False,
        ),
    )
    return cfg, SMOKE_CONFIG
