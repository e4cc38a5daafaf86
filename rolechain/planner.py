"""Partitioning of ordered workflow steps into execution blocks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Union

from .contracts import WorkflowStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleBlock:
    """A step executed on its own."""

    step: WorkflowStep
    start: int

    @property
    def steps(self) -> List[WorkflowStep]:
        return [self.step]

    @property
    def end(self) -> int:
        return self.start + 1

    @property
    def last_step(self) -> WorkflowStep:
        return self.step


@dataclass(frozen=True)
class ParallelBlock:
    """Consecutive steps sharing a non-zero parallel group, run concurrently."""

    steps: List[WorkflowStep]
    start: int

    @property
    def end(self) -> int:
        return self.start + len(self.steps)

    @property
    def last_step(self) -> WorkflowStep:
        return self.steps[-1]

    @property
    def group(self) -> int:
        return self.steps[0].parallel_group


Block = Union[SingleBlock, ParallelBlock]


def block_at(steps: Sequence[WorkflowStep], index: int) -> Block:
    """Return the block that starts at array position ``index``.

    A step with ``parallel_group > 0`` greedily absorbs every immediately
    following step carrying the same tag. A lone tagged step is still a
    single block.
    """
    if not 0 <= index < len(steps):
        raise IndexError(f"Step index {index} out of range for {len(steps)} steps")

    first = steps[index]
    if first.parallel_group <= 0:
        return SingleBlock(step=first, start=index)

    end = index + 1
    while end < len(steps) and steps[end].parallel_group == first.parallel_group:
        end += 1

    if end - index == 1:
        return SingleBlock(step=first, start=index)

    logger.debug(
        f"Parallel group {first.parallel_group} spans positions {index}..{end - 1}"
    )
    return ParallelBlock(steps=list(steps[index:end]), start=index)


def plan_blocks(steps: Sequence[WorkflowStep]) -> List[Block]:
    """Partition ``steps`` into consecutive blocks in a single linear pass."""
    blocks: List[Block] = []
    index = 0
    while index < len(steps):
        block = block_at(steps, index)
        blocks.append(block)
        index = block.end
    return blocks


def find_step_index(steps: Sequence[WorkflowStep], step_order: int) -> int | None:
    """Array position of the step whose ``step_order`` matches, if any."""
    for position, step in enumerate(steps):
        if step.step_order == step_order:
            return position
    return None
