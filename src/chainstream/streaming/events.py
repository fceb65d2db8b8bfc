"""
Reorg-aware contract event streaming.

EventWatcher runs its own block stream. For every applied block it fetches the
block's logs matching a filter and delivers them in log-index order; when a
block is reverted, the logs delivered for it are delivered again with
removed=True, in reverse order.
"""

import logging
from collections import OrderedDict
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from ..errors import ChainStreamError
from ..metrics import StreamMetrics, get_metrics
from .controller import BlockStreamController
from .logs import LogRangeFetcher
from .subscriptions import ErrorSink, SubscriptionRegistry
from .types import (
    BlockApplied,
    BlockReverted,
    EventFilter,
    LogEntry,
    LogEvent,
    StreamError,
    StreamTerminated,
)

if TYPE_CHECKING:
    from ..config import StreamConfig


class EventWatcher:
    """
    Delivers LogEvents for one filter on top of an independent block stream.

    Stream errors and the terminal event of the underlying block stream are
    forwarded unchanged to the watcher's subscribers.
    """

    def __init__(
        self,
        transport,
        event_filter: EventFilter,
        config: 'StreamConfig',
        metrics: Optional[StreamMetrics] = None,
        name: str = 'events',
        error_sink: Optional[ErrorSink] = None,
    ):
        self.filter = event_filter
        self.config = config
        self.name = name
        self.metrics = metrics or get_metrics()
        self.registry = SubscriptionRegistry(name, error_sink=error_sink, metrics=self.metrics)
        self.controller = BlockStreamController(
            transport, config, metrics=self.metrics, name=f'{name}-blocks', error_sink=error_sink
        )
        self.fetcher = LogRangeFetcher(
            transport,
            retry_config=config.retry,
            call_timeout=config.call_timeout,
            max_concurrency=config.log_concurrency,
            metrics=self.metrics,
        )
        # block hash -> logs delivered for that block, oldest block first
        self._delivered: 'OrderedDict[str, List[LogEntry]]' = OrderedDict()
        self._block_subscription: Optional[str] = None
        self.logger = logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self.controller.running

    def register(self, callback: Callable[[Any], Any]) -> str:
        return self.registry.register(callback)

    def unregister(self, subscription_id: str) -> bool:
        return self.registry.unregister(subscription_id)

    def start(self) -> None:
        if self._block_subscription is None:
            self._block_subscription = self.controller.register(self._on_block_event)
        self.controller.start()

    async def stop(self) -> None:
        await self.controller.stop()
        await self.registry.drain()

    async def close(self) -> None:
        await self.stop()
        self.registry.close()

    async def _on_block_event(self, event) -> None:
        # Runs on the block stream's subscriber worker, so events arrive one at a time and in order
        if isinstance(event, BlockApplied):
            await self._deliver_block(event)
        elif isinstance(event, BlockReverted):
            self._retract_block(event)
        elif isinstance(event, StreamError):
            self.registry.publish(event)
        elif isinstance(event, StreamTerminated):
            self.registry.publish(event)
            await self.registry.drain()
            self.registry.close()

    async def _deliver_block(self, event: BlockApplied) -> None:
        block = event.block
        try:
            logs = await self.fetcher.fetch(self.filter.for_block(block.number))
        except ChainStreamError as e:
            self.logger.warning(f"Event watcher '{self.name}': failed to fetch logs for block {block}: {e}")
            self.registry.publish(StreamError(e))
            return

        # Logs fetched by number must belong to the applied block, not a competing one
        logs = [log for log in logs if log.block_hash is None or log.block_hash == block.hash]
        self._remember(block.hash, logs)
        for log in logs:
            self.registry.publish(LogEvent(log))
        if logs:
            self.logger.debug(f"Event watcher '{self.name}': delivered {len(logs)} log(s) for block {block}")

    def _retract_block(self, event: BlockReverted) -> None:
        logs = self._delivered.pop(event.block.hash, None)
        if not logs:
            return
        self.logger.info(
            f"Event watcher '{self.name}': retracting {len(logs)} log(s) from reverted block {event.block}"
        )
        for log in reversed(logs):
            self.registry.publish(LogEvent(replace(log, removed=True), removed=True))

    def _remember(self, block_hash: str, logs: List[LogEntry]) -> None:
        self._delivered[block_hash] = logs
        while len(self._delivered) > self.config.tracked_depth:
            self._delivered.popitem(last=False)

