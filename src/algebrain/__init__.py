"""algebrain: a dual-phase recurrent block for character-level algebra.

A `DualPhaseBlock` routes each sequence in a batch to a *reader* cell while
it is consuming its query and to a *writer* cell once the query's terminator
has been seen. Both phases support reverse-mode and forward-mode
differentiation through the same step-result protocol.

Layout:
- codec / partition / types: symbols, phase flags, per-sequence state
- cells / lstm: the recurrent cell protocol and its Equinox LSTM
- block / runner: phase routing and greedy querying
- config / data / model / train: a thin training harness around the block
"""

from __future__ import annotations

try:
    from algebrain._version import __version__
except ImportError:
    __version__ = "0.0.0+unknown"

from algebrain.block import DualPhaseBlock, PhaseForwardStepResult, PhaseStepResult
from algebrain.cells import EMPTY_RESULT, DifferentiableCell, GradientAccumulator, RecurrentCell
from algebrain.codec import CHAR_COUNT, TERMINATOR, SymbolCodec
from algebrain.errors import AlgebrainError, InvalidArgument, OutOfRangeSymbol, PartitionMismatch
from algebrain.lstm import LSTMCell
from algebrain.runner import Runner, query
from algebrain.types import Dual, Phase, PhaseState, Sample

__all__ = [
    "CHAR_COUNT",
    "EMPTY_RESULT",
    "TERMINATOR",
    "AlgebrainError",
    "DifferentiableCell",
    "Dual",
    "DualPhaseBlock",
    "GradientAccumulator",
    "InvalidArgument",
    "LSTMCell",
    "OutOfRangeSymbol",
    "PartitionMismatch",
    "Phase",
    "PhaseForwardStepResult",
    "PhaseState",
    "PhaseStepResult",
    "RecurrentCell",
    "Runner",
    "Sample",
    "SymbolCodec",
    "__version__",
    "query",
]
