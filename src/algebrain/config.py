# SPDX-License-Identifier: Apache-2.0

"""Configuration for algebrain.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is intentionally strict: mis-typed keys or invalid values should fail
fast with error messages that tell you exactly what to fix.
"""

from __future__ import annotations

import re
import warnings
from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

Backend = Literal["lstm"]
DatasetBackend = Literal["jsonl", "inline"]
Sampling = Literal["epoch", "uniform"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(frozen=True)
class CodecConfig:
    """Alphabet of the symbol codec.

    The terminator marks the read->write switch on input and end-of-response on
    output. Both the codec and the block are built from these values.
    """

    char_count: int = 128
    terminator: int = 0


@dataclass(frozen=True)
class ModelConfig:
    """Model configuration.

    The reader and the writer are independent cells of the same shape.
    ``dropout`` is the fraction of each LSTM layer's output zeroed during
    training; queries always run with dropout off.
    """

    backend: Backend = "lstm"
    hidden_sizes: tuple[int, ...] = (128,)
    dropout: float = 0.0


@dataclass(frozen=True)
class DataConfig:
    """Where samples come from.

    - backend='jsonl': one ``{"query": ..., "response": ...}`` object per line in ``path``
    - backend='inline': samples listed directly in the config (debug/smoke runs)

    Sampling:
    - 'epoch': shuffled passes over the samples (``repeat=False`` stops after one)
    - 'uniform': every batch draws samples independently, with replacement
    """

    backend: DatasetBackend = "jsonl"
    path: str | None = None
    inline: tuple[dict[str, str], ...] = ()
    query_key: str = "query"
    response_key: str = "response"

    sampling: Sampling = "epoch"
    shuffle: bool = True
    seed: int = 0
    repeat: bool = True


@dataclass(frozen=True)
class TrainConfig:
    """Training loop configuration."""

    seed: int = 0
    steps: int = 1000
    batch_size: int = 16

    log_every: int = 25
    save_every: int = 500
    sample_every: int = 250
    sample_queries: tuple[str, ...] = ()


@dataclass(frozen=True)
class OptimConfig:
    """AdamW with warmup + cosine decay."""

    lr: float = 1e-3
    weight_decay: float = 0.0
    grad_clip_norm: float = 1.0
    warmup_steps: int = 10
    decay_steps: int | None = None
    min_lr_ratio: float = 0.0
    adam_b1: float = 0.9
    adam_b2: float = 0.999
    adam_eps: float = 1e-8


@dataclass(frozen=True)
class QueryConfig:
    """Inference-time decoding limits."""

    max_response_len: int = 1000


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "algebrain"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"


@dataclass(frozen=True)
class DebugConfig:
    """Debug configuration."""

    nan_check: bool = True


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs."""

    codec: CodecConfig = CodecConfig()
    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    query: QueryConfig = QueryConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="train.batch_size", raw_value="4"

    We do simple type casting based on the current value type.

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field (e.g., "train.batch_size").
    :param str raw_value: String value to set, will be cast to the field's type.
    :raises ValueError: If the path is invalid or contains unknown keys.
    :return Any: New dataclass with the field updated.
    """

    parts = path.split(".")
    if not path or any(not p for p in parts):
        raise ValueError(f"Invalid override path: {path!r}")

    # Walk to the parent
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    old = getattr(cur, leaf)
    new = _cast_like(old, raw_value)

    # Rebuild dataclasses from the bottom up (frozen dataclasses)
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    This is intentionally conservative. If we can't cast cleanly, error.

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ValueError: If cast fails (e.g., invalid boolean string).
    :return Any: Value cast to the type of `old`.
    """

    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if isinstance(old, tuple):
        # Lists are written YAML-style: model.hidden_sizes=[64,64]
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ValueError(f"Expected a YAML list, got {raw!r}") from e
        if not isinstance(parsed, list):
            parsed = [parsed]
        return tuple(parsed)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        # When the default is None, parse YAML scalars to recover numeric/bool types.
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError:
            return raw
        return raw if parsed is None else parsed
    if isinstance(old, str):
        return raw
    # For Literal or other types, keep string; validation should catch invalid
    return raw


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "train.steps=2000".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides (e.g., ["train.steps=2000"]).
    :raises ValueError: If override format is invalid or config is invalid.
    :return Config: Validated configuration object.
    """

    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    data = _resolve_variables(data)

    cfg = config_from_dict(data)

    if overrides:
        for o in overrides:
            if "=" not in o:
                raise ValueError(f"Invalid override {o!r}. Expected format like train.steps=123")
            k, v = o.split("=", 1)
            cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


_VAR_INLINE_RE = re.compile(r"\{\$variables\.([A-Za-z0-9_.-]+)\}")
_VAR_BRACE_RE = re.compile(r"\$\{variables\.([A-Za-z0-9_.-]+)\}")
_VAR_FULL_RE = re.compile(r"\$variables\.([A-Za-z0-9_.-]+)$")
_VAR_SUSPICIOUS_RE = re.compile(r"\$variables\.[A-Za-z0-9_.-]+")


def _resolve_variables(data: dict[str, Any]) -> dict[str, Any]:
    """Resolve variable references in a config dict before dataclass parsing.

    Supported forms:
    - Exact value: "$variables.foo" -> replaced with the referenced value (type preserved).
    - Inline string: "run{$variables.width}" or "${variables.width}" -> interpolated.

    Variable definitions live under top-level key "variables" and may be nested.

    :param dict[str, Any] data: Raw YAML-loaded data.
    :raises ValueError: If a variable reference is missing or circular.
    :return dict[str, Any]: Data with variables resolved (variables removed).
    """
    raw_vars = data.get("variables") or {}
    if not isinstance(raw_vars, dict):
        raise ValueError("variables must be a mapping if provided")

    resolved: dict[str, Any] = {}
    resolving: set[str] = set()

    def _lookup_var(path: str) -> Any:
        if path in resolved:
            return resolved[path]
        if path in resolving:
            cycle = " -> ".join(list(resolving) + [path])
            raise ValueError(f"Circular variable reference: {cycle}")

        cur: Any = raw_vars
        for part in path.split("."):
            if not isinstance(cur, dict) or part not in cur:
                raise ValueError(f"Unknown variable reference: variables.{path}")
            cur = cur[part]

        resolving.add(path)
        value = _resolve_value(cur)
        resolving.remove(path)
        resolved[path] = value
        return value

    def _sub_var(match: re.Match[str]) -> str:
        return str(_lookup_var(match.group(1)))

    def _resolve_value(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_resolve_value(v) for v in value]
        if isinstance(value, str):
            full = _VAR_FULL_RE.fullmatch(value)
            if full:
                return _lookup_var(full.group(1))
            out = _VAR_INLINE_RE.sub(_sub_var, value)
            out = _VAR_BRACE_RE.sub(_sub_var, out)
            remaining = _VAR_SUSPICIOUS_RE.findall(out)
            if remaining:
                warnings.warn(
                    f"String contains unresolved variable-like patterns: {remaining}. "
                    "Use {$variables.name} or ${variables.name} for inline substitution.",
                    stacklevel=2,
                )
            return out
        return value

    return {k: _resolve_value(v) for k, v in data.items() if k != "variables"}


def config_from_dict(data: dict[str, Any]) -> Config:
    """Convert a nested dict (YAML or a saved ``config_resolved.json``) into Config.

    Sequences are normalised to tuples so the frozen dataclasses stay immutable.

    :param dict[str, Any] data: Nested dictionary.
    :raises ValueError: If a section contains unknown keys.
    :return Config: Fully constructed Config with all sub-configs.
    """

    def section(cls: type, name: str, tuples: tuple[str, ...] = ()) -> Any:
        raw = dict(data.get(name) or {})
        for key in tuples:
            if key in raw and raw[key] is not None:
                value = raw[key]
                raw[key] = tuple(value) if isinstance(value, (list, tuple)) else (value,)
        try:
            return cls(**raw)
        except TypeError as e:
            raise ValueError(f"Invalid keys in config section {name!r}: {e}") from e

    unknown = set(data) - {"codec", "model", "data", "train", "optim", "query", "logging", "debug"}
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")

    return Config(
        codec=section(CodecConfig, "codec"),
        model=section(ModelConfig, "model", ("hidden_sizes",)),
        data=section(DataConfig, "data", ("inline",)),
        train=section(TrainConfig, "train", ("sample_queries",)),
        optim=section(OptimConfig, "optim"),
        query=section(QueryConfig, "query"),
        logging=section(LoggingConfig, "logging"),
        debug=section(DebugConfig, "debug"),
    )


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always raised with formatted message.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_codec(cfg: Config) -> None:
    if cfg.codec.char_count <= 0:
        _vfail(f"codec.char_count must be positive, got {cfg.codec.char_count}")
    if not (0 <= cfg.codec.terminator < cfg.codec.char_count):
        _vfail(
            f"codec.terminator must be within [0, {cfg.codec.char_count}), "
            f"got {cfg.codec.terminator}"
        )


def _validate_model(cfg: Config) -> None:
    if cfg.model.backend != "lstm":
        _vfail(f"model.backend must be 'lstm', got {cfg.model.backend!r}")
    if not cfg.model.hidden_sizes:
        _vfail("model.hidden_sizes must list at least one layer")
    for h in cfg.model.hidden_sizes:
        if not isinstance(h, int) or h <= 0:
            _vfail(f"model.hidden_sizes entries must be positive ints, got {h!r}")
    if not (0.0 <= cfg.model.dropout < 1.0):
        _vfail(f"model.dropout must be in [0, 1), got {cfg.model.dropout}")


def _validate_data(cfg: Config) -> None:
    if cfg.data.backend == "jsonl":
        if not cfg.data.path:
            _vfail("data.path must be set when data.backend='jsonl'")
    elif cfg.data.backend == "inline":
        if not cfg.data.inline:
            _vfail("data.inline must list at least one sample when data.backend='inline'")
        for i, item in enumerate(cfg.data.inline):
            if not isinstance(item, dict):
                _vfail(f"data.inline[{i}] must be a mapping, got {type(item).__name__}")
            for key in (cfg.data.query_key, cfg.data.response_key):
                if key not in item:
                    _vfail(f"data.inline[{i}] is missing key {key!r}")
    else:
        _vfail(f"data.backend must be 'jsonl' or 'inline', got {cfg.data.backend!r}")
    if not cfg.data.query_key or not cfg.data.response_key:
        _vfail("data.query_key and data.response_key must be non-empty")
    if cfg.data.sampling not in ("epoch", "uniform"):
        _vfail(f"data.sampling must be 'epoch' or 'uniform', got {cfg.data.sampling!r}")


def _validate_train(cfg: Config) -> None:
    """Validate training-related config fields."""
    if cfg.train.steps <= 0:
        _vfail(f"train.steps must be positive, got {cfg.train.steps}")
    if cfg.train.batch_size <= 0:
        _vfail(f"train.batch_size must be positive, got {cfg.train.batch_size}")
    if cfg.train.log_every <= 0:
        _vfail(f"train.log_every must be positive, got {cfg.train.log_every}")
    if cfg.train.save_every < 0:
        _vfail(f"train.save_every must be >= 0, got {cfg.train.save_every}")
    if cfg.train.sample_every < 0:
        _vfail(f"train.sample_every must be >= 0, got {cfg.train.sample_every}")


def _validate_optim(cfg: Config) -> None:
    """Validate optimizer-related config fields."""
    if cfg.optim.lr <= 0:
        _vfail(f"optim.lr must be positive, got {cfg.optim.lr}")
    if cfg.optim.weight_decay < 0:
        _vfail(f"optim.weight_decay must be >= 0, got {cfg.optim.weight_decay}")
    if cfg.optim.grad_clip_norm < 0:
        _vfail(f"optim.grad_clip_norm must be >= 0, got {cfg.optim.grad_clip_norm}")
    if cfg.optim.warmup_steps < 0:
        _vfail(f"optim.warmup_steps must be >= 0, got {cfg.optim.warmup_steps}")
    if cfg.optim.warmup_steps >= cfg.train.steps:
        _vfail(
            f"optim.warmup_steps ({cfg.optim.warmup_steps}) must be < train.steps "
            f"({cfg.train.steps})"
        )
    if cfg.optim.decay_steps is not None and cfg.optim.decay_steps <= 0:
        _vfail(f"optim.decay_steps must be positive when set, got {cfg.optim.decay_steps}")
    if cfg.optim.min_lr_ratio < 0 or cfg.optim.min_lr_ratio > 1:
        _vfail(f"optim.min_lr_ratio must be in [0, 1], got {cfg.optim.min_lr_ratio}")
    if cfg.optim.adam_b1 <= 0 or cfg.optim.adam_b1 >= 1:
        _vfail(f"optim.adam_b1 must be in (0, 1), got {cfg.optim.adam_b1}")
    if cfg.optim.adam_b2 <= 0 or cfg.optim.adam_b2 >= 1:
        _vfail(f"optim.adam_b2 must be in (0, 1), got {cfg.optim.adam_b2}")
    if cfg.optim.adam_eps <= 0:
        _vfail(f"optim.adam_eps must be positive, got {cfg.optim.adam_eps}")


def _validate_query(cfg: Config) -> None:
    if cfg.query.max_response_len < 0:
        _vfail(f"query.max_response_len must be >= 0, got {cfg.query.max_response_len}")


def _validate_logging(cfg: Config) -> None:
    """Validate logging-related config fields."""
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_codec(cfg)
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_train(cfg)
    _validate_optim(cfg)
    _validate_query(cfg)
    _validate_logging(cfg)


def resolve_decay_duration(cfg: Config) -> int:
    """Resolve cosine decay duration (post-warmup) in steps.

    If `optim.decay_steps` is unset, we default to `train.steps - optim.warmup_steps`
    so the schedule ends at `train.steps`.

    :param Config cfg: Training configuration.
    :return int: Decay duration in steps.
    """
    if cfg.optim.decay_steps is None:
        return int(cfg.train.steps) - int(cfg.optim.warmup_steps)
    return int(cfg.optim.decay_steps)
