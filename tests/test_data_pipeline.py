"""Sample loading and batching."""

from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from algebrain.codec import SymbolCodec
from algebrain.config import Config, DataConfig
from algebrain.data import (
    GeneratorBatchIterator,
    SampleBatchIterator,
    build_samples,
    build_train_iterator,
    load_samples,
)
from algebrain.types import Sample


def _write_jsonl(path: Path, rows: list[object]) -> Path:
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n")
    return path


def test_load_samples_reads_jsonl(tmp_path: Path, codec: SymbolCodec) -> None:
    """Each object becomes a Sample; blank lines are skipped."""
    path = tmp_path / "s.jsonl"
    path.write_text('{"query": "5+3", "response": "8"}\n\n{"query": "x", "response": "x"}\n')
    assert load_samples(path, codec=codec) == [Sample("5+3", "8"), Sample("x", "x")]


def test_load_samples_custom_keys(tmp_path: Path) -> None:
    """Key names are configurable."""
    path = _write_jsonl(tmp_path / "s.jsonl", [{"q": "1+1", "a": "2"}])
    assert load_samples(path, query_key="q", response_key="a") == [Sample("1+1", "2")]


@pytest.mark.parametrize(
    ("line", "match"),
    [
        ("not json", "invalid JSON"),
        ('["a", "b"]', "JSON object"),
        ('{"query": "1"}', "missing key"),
        ('{"query": 1, "response": "1"}', "must be strings"),
        ('{"query": "\\u00e9", "response": "1"}', "outside"),
        ('{"query": "a\\u0000", "response": "1"}', "terminator"),
    ],
)
def test_load_samples_reports_line(tmp_path: Path, codec: SymbolCodec, line: str, match: str) -> None:
    """Bad lines fail with a path:line reference."""
    path = tmp_path / "bad.jsonl"
    path.write_text('{"query": "ok", "response": "ok"}\n' + line + "\n")
    with pytest.raises(ValueError, match=match) as excinfo:
        load_samples(path, codec=codec)
    assert f"{path}:2" in str(excinfo.value)


def test_load_samples_missing_file(tmp_path: Path) -> None:
    """A missing file is a FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_samples(tmp_path / "nope.jsonl")


def test_build_samples_from_both_backends(tmp_path: Path, codec: SymbolCodec) -> None:
    """jsonl and inline backends produce the same samples."""
    rows = [{"query": "2*4", "response": "8"}]
    path = _write_jsonl(tmp_path / "s.jsonl", rows)
    jsonl_cfg = Config(data=DataConfig(backend="jsonl", path=str(path)))
    inline_cfg = Config(data=DataConfig(backend="inline", inline=tuple(rows)))
    assert build_samples(jsonl_cfg, codec) == build_samples(inline_cfg, codec) == [Sample("2*4", "8")]


def test_build_samples_rejects_empty_file(tmp_path: Path) -> None:
    """A source with no samples is an error."""
    path = tmp_path / "empty.jsonl"
    path.write_text("\n")
    with pytest.raises(ValueError, match="No samples"):
        build_samples(Config(data=DataConfig(path=str(path))))


def _samples(n: int) -> list[Sample]:
    return [Sample(str(i), str(i)) for i in range(n)]


def test_batches_without_shuffle_keep_order() -> None:
    """Unshuffled batches walk the list in order, wrapping across epochs."""
    it = SampleBatchIterator(_samples(3), batch_size=2, shuffle=False)
    assert [s.query for s in next(it)] == ["0", "1"]
    assert [s.query for s in next(it)] == ["2", "0"]
    assert it.epoch == 1


def test_single_pass_ends_with_short_batch() -> None:
    """With repeat=False the last batch may be short, then iteration stops."""
    it = SampleBatchIterator(_samples(5), batch_size=2, shuffle=True, seed=1, repeat=False)
    batches = list(it)
    assert [len(b) for b in batches] == [2, 2, 1]
    assert sorted(s.query for b in batches for s in b) == [str(i) for i in range(5)]


def test_shuffle_is_seeded() -> None:
    """The same seed yields the same batch order."""
    a = SampleBatchIterator(_samples(10), batch_size=4, seed=3)
    b = SampleBatchIterator(_samples(10), batch_size=4, seed=3)
    assert [next(a) for _ in range(5)] == [next(b) for _ in range(5)]


@pytest.mark.parametrize("kwargs", [{"samples": [], "batch_size": 1}, {"samples": [Sample("1", "1")], "batch_size": 0}])
def test_iterator_validates_arguments(kwargs: dict[str, object]) -> None:
    """Empty sample lists and non-positive batch sizes are rejected."""
    with pytest.raises(ValueError):
        SampleBatchIterator(**kwargs)  # type: ignore[arg-type]


def test_build_train_iterator_uses_train_batch_size(small_run_cfg) -> None:
    """The iterator honours train.batch_size and data.shuffle."""
    cfg, _ = small_run_cfg
    cfg = replace(cfg, data=replace(cfg.data, shuffle=False))
    batch = next(build_train_iterator(cfg, SymbolCodec()))
    assert len(batch) == cfg.train.batch_size
    assert batch[0] == Sample("5+3", "8")


class _CountingGenerator:
    def __init__(self) -> None:
        self.calls = 0

    def generate(self) -> Sample:
        self.calls += 1
        return Sample(str(self.calls), "x")


def test_generator_batches_call_generate_per_sample() -> None:
    """Each batch holds batch_size fresh samples from the generator."""
    gen = _CountingGenerator()
    it = GeneratorBatchIterator(gen, batch_size=3)
    assert [s.query for s in next(it)] == ["1", "2", "3"]
    assert [s.query for s in next(it)] == ["4", "5", "6"]
    with pytest.raises(ValueError):
        GeneratorBatchIterator(gen, batch_size=0)


def test_uniform_sampling_draws_from_the_loaded_samples(small_run_cfg) -> None:
    """data.sampling='uniform' ignores repeat and keeps drawing known samples."""
    cfg, _ = small_run_cfg
    cfg = replace(cfg, data=replace(cfg.data, sampling="uniform", repeat=False))
    it = build_train_iterator(cfg, SymbolCodec())
    assert isinstance(it, GeneratorBatchIterator)
    known = set(build_samples(cfg))
    for _ in range(10):
        batch = next(it)
        assert len(batch) == cfg.train.batch_size
        assert set(batch) <= known
