"""Data loading for algebrain.

Samples are ``(query, response)`` pairs read from JSONL
files (or listed inline in the config for smoke runs), then shuffled into
fixed-size batches (or drawn from a `Generator`). The public contract is
`build_train_iterator(cfg)`, which yields ``list[Sample]`` batches.
"""

from __future__ import annotations

from .pipeline import (
    GeneratorBatchIterator,
    ListGenerator,
    SampleBatchIterator,
    build_samples,
    build_train_iterator,
    load_samples,
)

__all__ = [
    "GeneratorBatchIterator",
    "ListGenerator",
    "SampleBatchIterator",
    "build_samples",
    "build_train_iterator",
    "load_samples",
]
