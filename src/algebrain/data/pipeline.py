"""Sample loading + batching.

Samples are validated against the codec when loaded, so a bad character fails
with a file/line reference instead of deep inside a training step.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import numpy as np

from algebrain.codec import SymbolCodec
from algebrain.config import Config
from algebrain.types import Generator, Sample

logger = logging.getLogger(__name__)


def _check_sample(sample: Sample, codec: SymbolCodec | None, where: str) -> None:
    if codec is None:
        return
    for field, text in (("query", sample.query), ("response", sample.response)):
        for ch in text:
            if not codec.in_range(ord(ch)):
                raise ValueError(
                    f"{where}: {field} contains character {ch!r} (code {ord(ch)}) outside "
                    f"[0, {codec.char_count})"
                )
        if codec.terminator in (ord(ch) for ch in text):
            raise ValueError(f"{where}: {field} contains the terminator symbol")


def _sample_from_record(
    record: Any, *, query_key: str, response_key: str, where: str
) -> Sample:
    if not isinstance(record, dict):
        raise ValueError(f"{where}: expected a JSON object, got {type(record).__name__}")
    try:
        query, response = record[query_key], record[response_key]
    except KeyError as e:
        raise ValueError(f"{where}: missing key {e.args[0]!r}") from e
    if not isinstance(query, str) or not isinstance(response, str):
        raise ValueError(f"{where}: {query_key!r} and {response_key!r} must be strings")
    return Sample(query=query, response=response)


def load_samples(
    path: str | Path,
    *,
    query_key: str = "query",
    response_key: str = "response",
    codec: SymbolCodec | None = None,
) -> list[Sample]:
    """Read samples from a JSONL file.

    Blank lines are ignored.

    :param path: JSONL file with one object per line.
    :param str query_key: Key holding the query text.
    :param str response_key: Key holding the response text.
    :param codec: If given, reject samples the codec can't encode.
    :raises FileNotFoundError: If ``path`` doesn't exist.
    :raises ValueError: On malformed lines or unencodable samples.
    :return list[Sample]: Samples in file order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sample file not found: {path}")

    samples: list[Sample] = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            where = f"{path}:{lineno}"
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{where}: invalid JSON: {e}") from e
            sample = _sample_from_record(
                record, query_key=query_key, response_key=response_key, where=where
            )
            _check_sample(sample, codec, where)
            samples.append(sample)
    return samples


def build_samples(cfg: Config, codec: SymbolCodec | None = None) -> list[Sample]:
    """Load every sample the config points at.

    :raises ValueError: If the source yields no samples.
    """
    if cfg.data.backend == "jsonl":
        samples = load_samples(
            cfg.data.path,  # type: ignore[arg-type]
            query_key=cfg.data.query_key,
            response_key=cfg.data.response_key,
            codec=codec,
        )
    elif cfg.data.backend == "inline":
        samples = []
        for i, record in enumerate(cfg.data.inline):
            where = f"data.inline[{i}]"
            sample = _sample_from_record(
                record,
                query_key=cfg.data.query_key,
                response_key=cfg.data.response_key,
                where=where,
            )
            _check_sample(sample, codec, where)
            samples.append(sample)
    else:  # pragma: no cover
        raise ValueError(f"Unknown data.backend: {cfg.data.backend!r}")

    if not samples:
        raise ValueError("No samples found for data config")
    logger.info("Loaded %d samples (%s)", len(samples), cfg.data.backend)
    return samples


class SampleBatchIterator(Iterator[list[Sample]]):
    """Yields fixed-size batches of samples, reshuffling each epoch.

    With ``repeat=False`` the final batch of an epoch may be short and the
    iterator stops after one pass.
    """

    def __init__(
        self,
        samples: Sequence[Sample],
        *,
        batch_size: int,
        shuffle: bool = True,
        seed: int = 0,
        repeat: bool = True,
    ):
        if not samples:
            raise ValueError("SampleBatchIterator needs at least one sample")
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.samples = list(samples)
        self.batch_size = batch_size
        self.shuffle = shuffle
        self.repeat = repeat
        self._rng = np.random.default_rng(seed)
        self.epoch = 0
        self._order = self._new_order()
        self._pos = 0

    def _new_order(self) -> np.ndarray:
        if self.shuffle:
            return self._rng.permutation(len(self.samples))
        return np.arange(len(self.samples))

    def _next_index(self) -> int | None:
        if self._pos >= len(self._order):
            if not self.repeat:
                return None
            self.epoch += 1
            self._order = self._new_order()
            self._pos = 0
        idx = int(self._order[self._pos])
        self._pos += 1
        return idx

    def __iter__(self) -> SampleBatchIterator:
        return self

    def __next__(self) -> list[Sample]:
        batch: list[Sample] = []
        while len(batch) < self.batch_size:
            idx = self._next_index()
            if idx is None:
                break
            batch.append(self.samples[idx])
        if not batch:
            raise StopIteration
        return batch


class ListGenerator:
    """`Generator` that draws uniformly (with replacement) from a fixed sample list."""

    def __init__(self, samples: Sequence[Sample], *, seed: int = 0):
        if not samples:
            raise ValueError("ListGenerator needs at least one sample")
        self.samples = list(samples)
        self._rng = np.random.default_rng(seed)

    def generate(self) -> Sample:
        return self.samples[int(self._rng.integers(len(self.samples)))]


class GeneratorBatchIterator(Iterator[list[Sample]]):
    """Endless batches, one `Generator.generate` call per sample."""

    def __init__(self, generator: Generator, *, batch_size: int):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.generator = generator
        self.batch_size = batch_size

    def __iter__(self) -> GeneratorBatchIterator:
        return self

    def __next__(self) -> list[Sample]:
        return [self.generator.generate() for _ in range(self.batch_size)]


def build_train_iterator(
    cfg: Config, codec: SymbolCodec | None = None
) -> Iterator[list[Sample]]:
    """Build the training batch iterator described by ``cfg``.

    ``data.sampling='uniform'`` never runs out, so ``data.repeat`` only
    applies to epoch sampling.
    """
    samples = build_samples(cfg, codec)
    if cfg.data.sampling == "uniform":
        return GeneratorBatchIterator(
            ListGenerator(samples, seed=cfg.data.seed), batch_size=cfg.train.batch_size
        )
    return SampleBatchIterator(
        samples,
        batch_size=cfg.train.batch_size,
        shuffle=cfg.data.shuffle,
        seed=cfg.data.seed,
        repeat=cfg.data.repeat,
    )
