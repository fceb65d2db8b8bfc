"""
Core types for chain streaming: block summaries, logs, reorg outcomes and stream events.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple, Union

LATEST = 'latest'
EARLIEST = 'earliest'

BlockTag = Union[int, str]


def normalize_hash(value: str) -> str:
    """Lowercase a hex identifier and ensure it carries the 0x prefix"""
    value = value.strip().lower()
    return value if value.startswith('0x') else f'0x{value}'


@dataclass(frozen=True)
class BlockSummary:
    """Minimal view of a block used for chain tracking"""

    number: int
    hash: str
    parent_hash: str
    timestamp: int = 0

    def __post_init__(self):
        if self.number < 0:
            raise ValueError(f'Invalid block number: {self.number}')
        if self.timestamp < 0:
            raise ValueError(f'Invalid block timestamp: {self.timestamp}')
        object.__setattr__(self, 'hash', normalize_hash(self.hash))
        object.__setattr__(self, 'parent_hash', normalize_hash(self.parent_hash))

    def is_parent_of(self, other: 'BlockSummary') -> bool:
        """Check whether other directly extends this block"""
        return other.parent_hash == self.hash and other.number == self.number + 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockSummary':
        """Create BlockSummary from a dictionary (snake_case or camelCase keys)"""
        return cls(
            number=int(data['number']),
            hash=data['hash'],
            parent_hash=data['parent_hash'] if 'parent_hash' in data else data['parentHash'],
            timestamp=int(data.get('timestamp', 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {'number': self.number, 'hash': self.hash, 'parent_hash': self.parent_hash, 'timestamp': self.timestamp}

    def __str__(self) -> str:
        return f'#{self.number} ({self.hash[:10]})'


@dataclass(frozen=True)
class LogEntry:
    """A single event log emitted by a contract"""

    address: str
    topics: Tuple[str, ...]
    data: str
    block_number: int
    log_index: int
    block_hash: Optional[str] = None
    transaction_hash: Optional[str] = None
    transaction_index: Optional[int] = None
    removed: bool = False

    @property
    def sort_key(self) -> Tuple[int, int]:
        """Canonical ordering key (block_number, log_index)"""
        return (self.block_number, self.log_index)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'address': self.address,
            'topics': list(self.topics),
            'data': self.data,
            'block_number': self.block_number,
            'block_hash': self.block_hash,
            'transaction_hash': self.transaction_hash,
            'transaction_index': self.transaction_index,
            'log_index': self.log_index,
            'removed': self.removed,
        }


TopicFilter = Optional[Union[str, Sequence[str]]]


@dataclass
class LogRangeRequest:
    """Range-bounded log query.

    from_block accepts 'earliest' and to_block accepts 'latest'; symbolic tags are
    resolved when the request is executed and never written back.
    """

    from_block: BlockTag
    to_block: BlockTag = LATEST
    address: Optional[Union[str, Sequence[str]]] = None
    topics: Optional[Sequence[TopicFilter]] = None

    def __post_init__(self):
        if isinstance(self.from_block, str) and self.from_block not in (EARLIEST, LATEST):
            raise ValueError(f"Invalid from_block tag: {self.from_block!r}")
        if isinstance(self.to_block, str) and self.to_block not in (EARLIEST, LATEST):
            raise ValueError(f"Invalid to_block tag: {self.to_block!r}")
        if isinstance(self.from_block, int) and isinstance(self.to_block, int) and self.from_block > self.to_block:
            raise ValueError(f'Invalid range: from_block ({self.from_block}) > to_block ({self.to_block})')

    @property
    def is_resolved(self) -> bool:
        """True when both bounds are concrete block numbers"""
        return isinstance(self.from_block, int) and isinstance(self.to_block, int)

    def with_range(self, from_block: int, to_block: int) -> 'LogRangeRequest':
        """Copy of this request with the same filters and a concrete range"""
        return LogRangeRequest(from_block=from_block, to_block=to_block, address=self.address, topics=self.topics)

    def span(self) -> int:
        """Number of blocks covered by a resolved request"""
        if not self.is_resolved:
            raise ValueError('Cannot compute span of an unresolved range')
        return self.to_block - self.from_block + 1


@dataclass(frozen=True)
class EventFilter:
    """Address/topic filter used by event watchers"""

    address: Optional[Union[str, Tuple[str, ...]]] = None
    topics: Optional[Tuple[TopicFilter, ...]] = None

    def for_block(self, number: int) -> LogRangeRequest:
        """Build a single-block log request with this filter"""
        return LogRangeRequest(from_block=number, to_block=number, address=self.address, topics=self.topics)


# Reorg outcomes


@dataclass(frozen=True)
class Extended:
    """The candidate block extends the tracked chain (or repeats a tracked block).

    preceding holds any blocks appended below the candidate in the same step,
    oldest first, when a branch extended the tip by more than one block.
    """

    applied_block: BlockSummary
    duplicate: bool = False
    preceding: Tuple[BlockSummary, ...] = ()

    @property
    def applied_blocks(self) -> Tuple[BlockSummary, ...]:
        """Every newly appended block, oldest first; empty for a duplicate"""
        if self.duplicate:
            return ()
        return self.preceding + (self.applied_block,)


@dataclass(frozen=True)
class Reorged:
    """A competing branch replaced the newest tracked blocks.

    reverted_blocks are ordered newest first, applied_blocks oldest first.
    """

    reverted_blocks: Tuple[BlockSummary, ...]
    applied_blocks: Tuple[BlockSummary, ...]
    depth: int

    @property
    def common_ancestor_number(self) -> int:
        """Block number of the last block shared by both branches"""
        return self.applied_blocks[0].number - 1


@dataclass(frozen=True)
class Unrecoverable:
    """The reorg cannot be reconciled from the tracked history window"""

    observed_depth: int
    tracked_depth: int


ReorgOutcome = Union[Extended, Reorged, Unrecoverable]


# Stream events delivered to subscribers


@dataclass(frozen=True)
class BlockApplied:
    """A block became part of the canonical chain"""

    block: BlockSummary


@dataclass(frozen=True)
class BlockReverted:
    """A previously applied block was removed by a reorg"""

    block: BlockSummary
    depth: int


@dataclass(frozen=True)
class StreamError:
    """Non-fatal failure; the stream keeps running"""

    error: Exception


@dataclass(frozen=True)
class StreamTerminated:
    """Terminal failure; all subscriptions are closed after delivery"""

    error: Exception


StreamEvent = Union[BlockApplied, BlockReverted, StreamError, StreamTerminated]


@dataclass(frozen=True)
class LogEvent:
    """A log delivered by an event watcher; removed=True when its block was reverted"""

    log: LogEntry
    removed: bool = False


@dataclass
class StreamStats:
    """Counters describing one stream's activity"""

    blocks_applied: int = 0
    blocks_reverted: int = 0
    reorgs: int = 0
    transport_errors: int = 0
    max_reorg_depth: int = 0
    last_error: Optional[str] = None

    def record_reorg(self, depth: int) -> None:
        self.reorgs += 1
        self.max_reorg_depth = max(self.max_reorg_depth, depth)
