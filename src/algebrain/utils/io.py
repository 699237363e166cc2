"""Filesystem + logging utilities.

algebrain uses deliberately boring IO:
- a run directory containing the resolved config, metrics.jsonl and the block
- JSONL is append-only and resilient (works even if the process crashes)
"""

from __future__ import annotations

import contextlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from algebrain.config import Config, config_from_dict, validate_config

_NOISY_CONSOLE_PREFIXES = ("jax", "jaxlib", "absl")

CONFIG_FILENAME = "config_resolved.json"


class _ConsoleNoiseFilter(logging.Filter):
    """Filter that hides noisy third-party INFO logs from the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        for prefix in _NOISY_CONSOLE_PREFIXES:
            if record.name.startswith(prefix):
                return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    """Build a console handler, using Rich when requested."""

    if use_rich:
        from rich.logging import RichHandler

        handler: logging.Handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))

    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure Python logging with a console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: If True, use Rich for nicer console logs.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> None:
    """Attach a file handler that captures all logs.

    :param Path path: Log file path.
    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path.resolve()):
            return
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(file_handler)


def create_run_dir(cfg: Config, *, config_path: str | Path | None) -> Path:
    """Create a fresh run directory and snapshot the config into it.

    - If cfg.logging.run_dir is None: create ``runs/<project>/<stamp>_<name>``.
    - If it is set, it must not exist yet (we refuse to clobber a run).

    :param Config cfg: Training configuration.
    :param config_path: Optional path to original YAML config.
    :raises RuntimeError: If the configured run directory already exists.
    :return Path: Path to the run directory.
    """

    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists():
            raise RuntimeError(
                f"Run dir already exists: {run_dir}. "
                "Refusing to clobber. Set logging.run_dir to a new path."
            )
        run_dir.mkdir(parents=True, exist_ok=False)
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
        run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / CONFIG_FILENAME).write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True))
    if config_path is not None:
        src = Path(config_path)
        if src.exists():
            (run_dir / "config_original.yaml").write_text(src.read_text())

    return run_dir


def load_run_config(run_dir: str | Path) -> Config:
    """Read the config snapshot written by `create_run_dir`.

    :raises FileNotFoundError: If the run directory has no config snapshot.
    :raises ValueError: If the snapshot is corrupted or invalid.
    """
    path = Path(run_dir) / CONFIG_FILENAME
    if not path.exists():
        raise FileNotFoundError(f"{CONFIG_FILENAME} not found in {run_dir}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ValueError(f"Corrupted {CONFIG_FILENAME} in {run_dir}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    cfg = config_from_dict(data)
    validate_config(cfg)
    return cfg


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        """Initialize the metrics writer.

        :param path: Path to the JSONL file.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        """Write a metrics row to the JSONL file.

        :param dict[str, Any] row: Dictionary of metrics to write.
        """
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        """Close the file handle."""
        with contextlib.suppress(Exception):
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
