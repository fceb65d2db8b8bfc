"""
Range-bounded log queries with automatic bisection.

Remote nodes cap the block range (or result size) of a single eth_getLogs
call. LogRangeFetcher issues the requested range as-is and, whenever the node
rejects it, splits it in half and fetches both halves, recursively, until the
node accepts every piece.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import pyarrow as pa

from ..errors import RangeRejected
from ..metrics import StreamMetrics, get_metrics
from .resilience import RetryConfig, call_with_retry
from .types import EARLIEST, LATEST, LogEntry, LogRangeRequest

LOG_SCHEMA = pa.schema(
    [
        pa.field('block_number', pa.uint64(), nullable=False),
        pa.field('log_index', pa.uint32(), nullable=False),
        pa.field('block_hash', pa.string()),
        pa.field('transaction_hash', pa.string()),
        pa.field('transaction_index', pa.uint32()),
        pa.field('address', pa.string(), nullable=False),
        pa.field('topics', pa.list_(pa.string()), nullable=False),
        pa.field('data', pa.string(), nullable=False),
        pa.field('removed', pa.bool_(), nullable=False),
    ]
)


def sort_logs(logs: Sequence[LogEntry]) -> List[LogEntry]:
    """Order logs by (block_number, log_index) ascending"""
    return sorted(logs, key=lambda log: log.sort_key)


def logs_to_arrow(logs: Sequence[LogEntry]) -> pa.Table:
    """
    Convert log entries to a pyarrow Table with LOG_SCHEMA.

    Rows are sorted by (block_number, log_index) regardless of input order.
    """
    ordered = sort_logs(logs)
    columns = {
        'block_number': [log.block_number for log in ordered],
        'log_index': [log.log_index for log in ordered],
        'block_hash': [log.block_hash for log in ordered],
        'transaction_hash': [log.transaction_hash for log in ordered],
        'transaction_index': [log.transaction_index for log in ordered],
        'address': [log.address for log in ordered],
        'topics': [list(log.topics) for log in ordered],
        'data': [log.data for log in ordered],
        'removed': [log.removed for log in ordered],
    }
    return pa.Table.from_pydict(columns, schema=LOG_SCHEMA)


class LogRangeFetcher:
    """
    Fetches logs for a block range, bisecting ranges the node rejects.

    Each fetch() is independent: nothing is cached between calls. Sub-ranges
    produced by a split are fetched concurrently (bounded by
    ``max_concurrency``) and reassembled in ascending order.

    Args:
        transport: Transport used for eth_getLogs and head resolution
        retry_config: Retry policy for transient transport failures
        call_timeout: Seconds allowed per transport call attempt
        max_concurrency: Maximum sub-range requests in flight per fetch()
        metrics: Metrics sink (defaults to the global instance)
    """

    def __init__(
        self,
        transport,
        retry_config: Optional[RetryConfig] = None,
        call_timeout: Optional[float] = None,
        max_concurrency: int = 4,
        metrics: Optional[StreamMetrics] = None,
    ):
        if max_concurrency < 1:
            raise ValueError(f'max_concurrency must be >= 1, got {max_concurrency}')
        self.transport = transport
        self.retry_config = retry_config or RetryConfig()
        self.call_timeout = call_timeout
        self.max_concurrency = max_concurrency
        self.metrics = metrics or get_metrics()
        self.logger = logging.getLogger(__name__)

    async def fetch(self, request: LogRangeRequest) -> List[LogEntry]:
        """
        Return every log matching the request, ordered by (block_number, log_index).

        Raises:
            RangeRejected: If a single-block range is still rejected
            TransportFailure: If the node keeps failing after retries
        """
        resolved = await self.resolve(request)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        logs = await self._fetch_range(resolved, semaphore)
        self.logger.debug(
            f'Fetched {len(logs)} log(s) for blocks [{resolved.from_block}, {resolved.to_block}]'
        )
        return logs

    async def resolve(self, request: LogRangeRequest) -> LogRangeRequest:
        """Replace symbolic block tags with concrete numbers; the input is not modified"""
        if request.is_resolved:
            return request

        head_number = None
        if LATEST in (request.from_block, request.to_block):
            head = await self._call('fetch_head', self.transport.fetch_head)
            head_number = head.number

        from_block = _resolve_tag(request.from_block, head_number)
        to_block = _resolve_tag(request.to_block, head_number)
        if from_block > to_block:
            raise ValueError(f'Invalid range: from_block ({from_block}) > to_block ({to_block})')
        return request.with_range(from_block, to_block)

    async def _fetch_range(self, request: LogRangeRequest, semaphore: asyncio.Semaphore) -> List[LogEntry]:
        try:
            async with semaphore:
                logs = await self._call('fetch_logs', lambda: self.transport.fetch_logs(request))
        except RangeRejected as e:
            if request.from_block >= request.to_block:
                self.logger.error(f'Node rejected single-block log query for block {request.from_block}: {e.message}')
                raise

            mid = (request.from_block + request.to_block) // 2
            self.metrics.log_range_splits.inc()
            self.logger.info(
                f'Log range [{request.from_block}, {request.to_block}] rejected; '
                f'splitting into [{request.from_block}, {mid}] and [{mid + 1}, {request.to_block}]'
            )
            lower, upper = await asyncio.gather(
                self._fetch_range(request.with_range(request.from_block, mid), semaphore),
                self._fetch_range(request.with_range(mid + 1, request.to_block), semaphore),
            )
            return lower + upper

        self.metrics.logs_fetched.inc(len(logs))
        return sort_logs(logs)

    async def _call(self, operation: str, call):
        def on_retry(reason: str, error: Exception) -> None:
            self.metrics.retry_attempts.labels(operation=operation, reason=reason).inc()

        with self.metrics.track_call(operation):
            return await call_with_retry(
                operation, call, self.retry_config, timeout=self.call_timeout, on_retry=on_retry
            )


def _resolve_tag(tag, head_number: Optional[int]) -> int:
    if tag == EARLIEST:
        return 0
    if tag == LATEST:
        return head_number
    return int(tag)
