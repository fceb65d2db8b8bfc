"""
Reorg detection against the remote chain.

ReorgDetector turns a freshly observed head into the ordered list of tracker
outcomes needed to bring the tracked segment up to that head: it fills gaps
forward by block number and, when a block does not extend the tip, walks the
remote branch back parent by parent until it links to tracked history.
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from ..errors import TransportFailure
from .history import ChainHistoryTracker
from .types import BlockSummary, ReorgOutcome, Unrecoverable

T = TypeVar('T')

# (operation name, zero-argument coroutine factory) -> result
CallRunner = Callable[[str, Callable[[], Awaitable[T]]], Awaitable[T]]


async def _direct_call(operation: str, call: Callable[[], Awaitable[T]]) -> T:
    return await call()


class ReorgDetector:
    """
    Reconciles remote heads with a ChainHistoryTracker.

    Args:
        tracker: History tracker owned by the calling stream
        transport: Transport used to fetch blocks by number and hash
        max_walk_back: Maximum parent fetches while looking for the fork point
                       (default: tracker.tracked_depth + 1)
        call: Runner wrapping every transport call, used by the stream
              controller to apply timeouts, retries and metrics
    """

    def __init__(
        self,
        tracker: ChainHistoryTracker,
        transport,
        max_walk_back: Optional[int] = None,
        call: Optional[CallRunner] = None,
    ):
        self.tracker = tracker
        self.transport = transport
        self.max_walk_back = max_walk_back if max_walk_back is not None else tracker.tracked_depth + 1
        if self.max_walk_back < 1:
            raise ValueError(f'max_walk_back must be >= 1, got {self.max_walk_back}')
        self._call = call or _direct_call
        self.logger = logging.getLogger(__name__)

    async def reconcile(self, head: BlockSummary) -> AsyncIterator[ReorgOutcome]:
        """
        Bring the tracker up to ``head``.

        Yields outcomes as soon as they are applied to the tracker, so a
        transport failure part way through a gap never hides blocks that were
        already applied. Iteration ends after an Unrecoverable outcome.
        """
        tip = self.tracker.tip

        # Fill a gap forward so skipped heights are applied, not mistaken for a reorg
        while tip is not None and head.number > tip.number + 1 and not self.tracker.contains(head.hash):
            number = tip.number + 1
            block = await self._call(
                'fetch_block_by_number', lambda: self.transport.fetch_block_by_number(number)
            )
            if block is None:
                self.logger.debug(f'Block {number} not yet available while filling gap to {head}')
                break
            outcome = await self.classify(block)
            yield outcome
            if isinstance(outcome, Unrecoverable):
                return
            tip = self.tracker.tip

        yield await self.classify(head)

    async def classify(self, candidate: BlockSummary) -> ReorgOutcome:
        """Classify one block, fetching its ancestry when it does not extend the tip"""
        tracker = self.tracker
        tip = tracker.tip
        if tip is None or tracker.contains(candidate.hash) or tip.is_parent_of(candidate):
            return tracker.observe(candidate)

        if candidate.number > tip.number + 1:
            raise TransportFailure(
                f'Block {candidate} is ahead of tip {tip}; intermediate blocks are not available yet',
                operation='fetch_block_by_number',
            )

        floor = tracker.floor
        if candidate.number < floor.number:
            return tracker.observe(candidate)

        ancestry = await self.walk_back(candidate, floor.number)
        return tracker.observe(candidate, ancestry)

    async def walk_back(self, candidate: BlockSummary, floor_number: int) -> List[BlockSummary]:
        """
        Fetch the candidate's ancestors until one links to tracked history.

        Stops early when the branch reaches the floor height without linking or
        when max_walk_back fetches were spent. The tracker then re-seeds from the
        branch if its window never filled, and reports the reorg as unrecoverable
        otherwise.

        Returns:
            Ancestors of the candidate, oldest first
        """
        ancestry: List[BlockSummary] = []
        current = candidate
        fetched = 0
        while not self.tracker.links_to_history(current):
            if current.number <= floor_number or fetched >= self.max_walk_back:
                break
            parent_hash = current.parent_hash
            parent = await self._call('fetch_block_by_hash', lambda: self.transport.fetch_block_by_hash(parent_hash))
            fetched += 1
            if parent is None:
                raise TransportFailure(
                    f'Parent {parent_hash} of block {current} is not available', operation='fetch_block_by_hash'
                )
            if not parent.is_parent_of(current):
                raise TransportFailure(
                    f'Remote node returned block {parent} that is not the parent of {current}',
                    operation='fetch_block_by_hash',
                )
            ancestry.append(parent)
            current = parent

        ancestry.reverse()
        if ancestry:
            self.logger.debug(f'Walked back {len(ancestry)} block(s) from {candidate} to {current}')
        return ancestry

