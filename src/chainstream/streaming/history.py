"""
Bounded in-memory history of recently observed blocks.

The tracker keeps the newest ``tracked_depth`` block summaries of the canonical
chain and classifies every newly observed block as an extension, a reorg it can
reconcile, or a reorg deeper than its window.
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence

from .types import BlockSummary, Extended, Reorged, ReorgOutcome, Unrecoverable

DEFAULT_TRACKED_DEPTH = 64


class ChainSegment:
    """
    Fixed-capacity, parent-linked run of blocks ordered by ascending number.

    Besides the blocks themselves the segment remembers the parent hash of its
    oldest block, which lets a reorg that replaces every tracked block find its
    common ancestor even though that ancestor was already evicted.

    ``evicted`` stays False until a block leaves the window; until then the floor
    is the first block ever tracked and nothing older was observed.
    """

    def __init__(self, capacity: int = DEFAULT_TRACKED_DEPTH):
        if capacity < 1:
            raise ValueError(f'capacity must be >= 1, got {capacity}')
        self.capacity = capacity
        self._blocks: Deque[BlockSummary] = deque()
        self._number_by_hash: Dict[str, int] = {}
        self.floor_parent_hash: Optional[str] = None
        self.evicted = False

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self):
        return iter(self._blocks)

    def __bool__(self) -> bool:
        return bool(self._blocks)

    @property
    def tip(self) -> Optional[BlockSummary]:
        return self._blocks[-1] if self._blocks else None

    @property
    def floor(self) -> Optional[BlockSummary]:
        return self._blocks[0] if self._blocks else None

    def blocks(self) -> List[BlockSummary]:
        """Snapshot of the tracked blocks, oldest first"""
        return list(self._blocks)

    def contains(self, block_hash: str) -> bool:
        return block_hash in self._number_by_hash

    def get_by_number(self, number: int) -> Optional[BlockSummary]:
        if not self._blocks:
            return None
        offset = number - self._blocks[0].number
        if 0 <= offset < len(self._blocks):
            return self._blocks[offset]
        return None

    def position_of(self, block_hash: str) -> Optional[int]:
        """Position of a tracked hash counted from the floor, or None"""
        number = self._number_by_hash.get(block_hash)
        if number is None:
            return None
        return number - self._blocks[0].number

    def append(self, block: BlockSummary) -> None:
        """Append a block that extends the tip, evicting the oldest entry when full"""
        tip = self.tip
        if tip is not None and not tip.is_parent_of(block):
            raise ValueError(f'Block {block} does not extend tip {tip}')
        if tip is None:
            self.floor_parent_hash = block.parent_hash
        self._blocks.append(block)
        self._number_by_hash[block.hash] = block.number
        while len(self._blocks) > self.capacity:
            oldest = self._blocks.popleft()
            del self._number_by_hash[oldest.hash]
            self.floor_parent_hash = oldest.hash
            self.evicted = True

    def truncate_after(self, keep: int) -> List[BlockSummary]:
        """Drop every block after the first ``keep`` entries; return them newest first"""
        removed: List[BlockSummary] = []
        while len(self._blocks) > keep:
            block = self._blocks.pop()
            del self._number_by_hash[block.hash]
            removed.append(block)
        return removed

    def clear(self) -> None:
        self._blocks.clear()
        self._number_by_hash.clear()
        self.floor_parent_hash = None
        self.evicted = False


class ChainHistoryTracker:
    """
    Classifies observed blocks against the tracked chain segment.

    The tracker never talks to the network. When a candidate does not extend the
    tip, the caller supplies the blocks of the competing branch below the
    candidate (``ancestry``), fetched from the remote node, and the tracker finds
    the common ancestor inside its window.

    Not thread-safe: a single stream loop owns each instance.
    """

    def __init__(self, tracked_depth: int = DEFAULT_TRACKED_DEPTH):
        if tracked_depth < 1:
            raise ValueError(f'tracked_depth must be >= 1, got {tracked_depth}')
        self.tracked_depth = tracked_depth
        self.segment = ChainSegment(tracked_depth)
        self.logger = logging.getLogger(__name__)

    @property
    def tip(self) -> Optional[BlockSummary]:
        return self.segment.tip

    @property
    def floor(self) -> Optional[BlockSummary]:
        return self.segment.floor

    def blocks(self) -> List[BlockSummary]:
        return self.segment.blocks()

    def contains(self, block_hash: str) -> bool:
        return self.segment.contains(block_hash)

    def links_to_history(self, block: BlockSummary) -> bool:
        """True if block's parent is tracked, or is the evicted ancestor of the floor"""
        if self.segment.contains(block.parent_hash):
            return True
        floor = self.segment.floor
        return floor is not None and block.number == floor.number and block.parent_hash == self.segment.floor_parent_hash

    def reset(self, seed: Optional[BlockSummary] = None) -> None:
        """Forget all history, optionally seeding with a trusted block"""
        self.segment.clear()
        if seed is not None:
            self.segment.append(seed)
        self.logger.info(f'Chain history reset{f" at block {seed}" if seed else ""}')

    def observe(self, candidate: BlockSummary, ancestry: Optional[Sequence[BlockSummary]] = None) -> ReorgOutcome:
        """
        Classify a newly observed block and update the tracked segment.

        Args:
            candidate: The newly observed block (normally the remote head)
            ancestry: Blocks of the candidate's branch below it, oldest first,
                      consecutive and parent-linked up to the candidate. Only
                      needed when the candidate does not extend the tip.

        Returns:
            Extended, Reorged or Unrecoverable. Unrecoverable leaves the segment untouched.
            Before any block has been evicted, a branch reaching the floor height without
            a common ancestor replaces every tracked block (Reorged, depth = segment size).

        Raises:
            ValueError: If the supplied branch is not a consecutive parent-linked chain
        """
        segment = self.segment
        tip = segment.tip

        if tip is None:
            segment.append(candidate)
            return Extended(candidate)

        if segment.contains(candidate.hash):
            return Extended(candidate, duplicate=True)

        if tip.is_parent_of(candidate):
            segment.append(candidate)
            return Extended(candidate)

        floor = segment.floor
        if candidate.number < floor.number:
            observed_depth = tip.number - candidate.number + 1
            self.logger.warning(
                f'Block {candidate} is below the tracked floor {floor}; cannot establish ancestry'
            )
            return Unrecoverable(observed_depth=observed_depth, tracked_depth=self.tracked_depth)

        branch = list(ancestry or []) + [candidate]
        _validate_branch(branch)

        # Drop leading branch blocks that are still part of the tracked chain
        while len(branch) > 1 and segment.contains(branch[0].hash):
            branch.pop(0)

        first = branch[0]
        if first.number > tip.number + 1:
            raise ValueError(f'Branch starting at {first} leaves a gap above tip {tip}')

        ancestor_position = segment.position_of(first.parent_hash)
        if ancestor_position is not None:
            keep = ancestor_position + 1
        elif first.number == floor.number and first.parent_hash == segment.floor_parent_hash:
            keep = 0
        elif not segment.evicted and first.number <= floor.number:
            # Nothing below the floor was ever tracked, so the branch replaces the whole segment
            self.logger.info(
                f'Fork point of {candidate} lies below the first tracked block {floor}; re-seeding from {first}'
            )
            keep = 0
        else:
            # The fork point lies below the window (or was not walked back far enough).
            # The block known at the branch's parent height (tracked, or the evicted floor parent) is replaced too
            observed_depth = tip.number - first.number + 1
            if first.number >= floor.number:
                observed_depth += 1
            observed_depth = max(observed_depth, 1)
            self.logger.error(
                f'Unrecoverable reorg: branch starting at {first} does not link to tracked history '
                f'(observed depth {observed_depth}, tracked depth {self.tracked_depth})'
            )
            return Unrecoverable(observed_depth=observed_depth, tracked_depth=self.tracked_depth)

        if keep > 0 and floor.number + ancestor_position != first.number - 1:
            raise ValueError(f'Branch block {first} does not follow its ancestor number')

        depth = len(segment) - keep
        if depth == 0:
            # Branch connects to the tip: a multi-block extension
            for block in branch:
                segment.append(block)
            return Extended(branch[-1], preceding=tuple(branch[:-1]))

        # An emptied segment re-seeds from the first branch block
        reverted = segment.truncate_after(keep)
        for block in branch:
            segment.append(block)

        self.logger.info(
            f'Reorg of depth {depth} reconciled: reverted {len(reverted)} block(s) from {reverted[0]}, '
            f'applied {len(branch)} block(s) up to {branch[-1]}'
        )
        return Reorged(reverted_blocks=tuple(reverted), applied_blocks=tuple(branch), depth=depth)


def _validate_branch(branch: Sequence[BlockSummary]) -> None:
    for parent, child in zip(branch, branch[1:]):
        if not parent.is_parent_of(child):
            raise ValueError(f'Branch is not parent-linked between {parent} and {child}')
