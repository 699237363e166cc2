"""Greedy query runner.

Feeds a query one character at a time, then a terminator (which moves the
sequence to the writer), then feeds each decoded output symbol back in until
the block emits a terminator or the length cap is reached.
"""

from __future__ import annotations

import logging

import jax

from algebrain.block import DualPhaseBlock
from algebrain.codec import SymbolCodec
from algebrain.errors import InvalidArgument
from algebrain.types import PhaseState

logger = logging.getLogger(__name__)

MAX_RESPONSE_LEN = 1000


class Runner:
    """Steps a block through time for a single sequence.

    Queries always run with dropout off, whatever mode ``block`` was left in.
    """

    def __init__(
        self,
        block: DualPhaseBlock,
        codec: SymbolCodec | None = None,
        *,
        max_response_len: int = MAX_RESPONSE_LEN,
    ):
        codec = codec or SymbolCodec()
        if codec.terminator != block.terminator:
            raise InvalidArgument(
                f"codec terminator {codec.terminator} != block terminator {block.terminator}"
            )
        if max_response_len < 0:
            raise InvalidArgument(f"max_response_len must be >= 0, got {max_response_len}")
        self.block = block.dropout(False)
        self.codec = codec
        self.max_response_len = max_response_len
        self.state: PhaseState = self.block.start_state(1)[0]
        self.steps = 0

    def reset(self) -> None:
        self.state = self.block.start_state(1)[0]
        self.steps = 0

    def step_time(self, vector: jax.Array) -> jax.Array:
        """Run one timestep and return the block's output vector."""
        res = self.block.step([self.state], [vector])
        self.state = res.states[0]
        self.steps += 1
        return res.outputs[0]

    def query(self, text: str) -> str:
        """Answer ``text`` from scratch and return the decoded response.

        Characters outside the codec's alphabet are skipped rather than
        failing the query; the terminating symbol is not included.
        """
        self.reset()
        codec = self.codec
        skipped = 0
        for ch in text:
            code = ord(ch)
            if not codec.in_range(code):
                skipped += 1
                continue
            self.step_time(codec.encode(code))
        if skipped:
            logger.debug("query: skipped %d out-of-range character(s)", skipped)
        self.step_time(codec.terminator_vector())

        last = codec.terminator
        out: list[str] = []
        while True:
            last = codec.decode(self.step_time(codec.encode(last)))
            if last == codec.terminator or len(out) >= self.max_response_len:
                break
            out.append(chr(last))
        logger.debug("query: %d steps, %d response symbols", self.steps, len(out))
        return "".join(out)


def query(
    block: DualPhaseBlock,
    text: str,
    *,
    codec: SymbolCodec | None = None,
    max_response_len: int = MAX_RESPONSE_LEN,
) -> str:
    """Convenience wrapper: ``Runner(block, codec).query(text)``."""
    return Runner(block, codec, max_response_len=max_response_len).query(text)
