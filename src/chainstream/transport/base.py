"""Transport protocol consumed by the streaming engine."""

from typing import Any, Awaitable, Callable, List, Optional, Protocol, runtime_checkable

from ..streaming.types import BlockSummary, LogEntry, LogRangeRequest

HeadCallback = Callable[[BlockSummary], Any]


class HeadSubscription(Protocol):
    """Handle returned by push transports for a head subscription."""

    async def unsubscribe(self) -> None:
        """Stop delivering heads; safe to call more than once."""


@runtime_checkable
class Transport(Protocol):
    """Port defining the contract for a remote node client.

    Implementations raise TransportFailure for connectivity problems and
    RangeRejected when a log query exceeds the node's range limit. They may
    be shared by concurrent streams and must not hold per-stream state.
    """

    async def fetch_head(self) -> BlockSummary:
        """Return the current head block."""

    async def fetch_block_by_number(self, number: int) -> Optional[BlockSummary]:
        """Return the canonical block at the given height, or None if unknown."""

    async def fetch_block_by_hash(self, block_hash: str) -> Optional[BlockSummary]:
        """Return the block with the given hash, or None if unknown."""

    async def fetch_logs(self, request: LogRangeRequest) -> List[LogEntry]:
        """Return logs for a resolved [from_block, to_block] range, inclusive."""


@runtime_checkable
class PushTransport(Transport, Protocol):
    """Transport that can push new heads instead of being polled."""

    async def subscribe_heads(self, callback: Callable[[BlockSummary], Awaitable[None]]) -> HeadSubscription:
        """Invoke callback for every new head until the subscription is cancelled."""


def supports_push(transport: Any) -> bool:
    """True if the transport exposes subscribe_heads"""
    return callable(getattr(transport, 'subscribe_heads', None))
