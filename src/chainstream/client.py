"""
Application-facing client for chain streaming.

ChainClient wires a transport, a StreamConfig and the metrics registry into
block streams, event watchers and log queries.
"""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import pyarrow as pa

from .config import StreamConfig
from .errors import SubscriptionCallbackError
from .metrics import StreamMetrics, get_metrics
from .streaming.controller import BlockStreamController
from .streaming.events import EventWatcher
from .streaming.logs import LogRangeFetcher, logs_to_arrow
from .streaming.types import (
    BlockApplied,
    BlockReverted,
    BlockSummary,
    EventFilter,
    LogEntry,
    LogEvent,
    LogRangeRequest,
    StreamError,
    StreamTerminated,
)
from .transport.jsonrpc import JsonRpcTransport


def _route(
    event: Any,
    on_data: Optional[Callable],
    on_revert: Optional[Callable],
    on_error: Optional[Callable],
) -> Tuple[Optional[Callable], Any]:
    if isinstance(event, BlockApplied):
        return on_data, event.block
    if isinstance(event, BlockReverted):
        return on_revert, event.block
    if isinstance(event, LogEvent):
        return on_data, event
    if isinstance(event, (StreamError, StreamTerminated)):
        return on_error, event.error
    return None, event


def make_dispatcher(
    on_data: Callable,
    on_revert: Optional[Callable] = None,
    on_error: Optional[Callable] = None,
) -> Callable[[Any], Any]:
    """
    Build one registry callback routing stream events to user handlers.

    The dispatcher is a coroutine function when any handler is, so it is
    delivered through its own queue and may await the handlers.
    """
    handlers = [h for h in (on_data, on_revert, on_error) if h is not None]

    if any(inspect.iscoroutinefunction(h) for h in handlers):

        async def dispatch_async(event: Any) -> None:
            handler, argument = _route(event, on_data, on_revert, on_error)
            if handler is not None:
                result = handler(argument)
                if inspect.isawaitable(result):
                    await result

        return dispatch_async

    def dispatch(event: Any) -> None:
        handler, argument = _route(event, on_data, on_revert, on_error)
        if handler is not None:
            handler(argument)

    return dispatch


class ChainClient:
    """
    Chain-aware streaming client.

    All block watchers share one block stream, started on the first
    watch_blocks() call and stopped when its last watcher is removed. Every
    watch_events() call runs an independent event stream.

    Example:
        >>> async with ChainClient.from_url('https://eth.example.org') as client:
        ...     sub_id = client.watch_blocks(lambda block: print('applied', block),
        ...                                  on_revert=lambda block: print('reverted', block))
        ...     logs = await client.get_logs(LogRangeRequest(from_block=0, to_block=1000))
        ...     await client.unwatch(sub_id)
    """

    def __init__(
        self,
        transport,
        config: Optional[StreamConfig] = None,
        metrics: Optional[StreamMetrics] = None,
        owns_transport: bool = False,
    ):
        self.transport = transport
        self.config = config or StreamConfig()
        self.metrics = metrics or get_metrics()
        self._owns_transport = owns_transport
        self._blocks: Optional[BlockStreamController] = None
        self._watchers: Dict[str, EventWatcher] = {}
        self._error_handlers: Dict[str, Callable] = {}
        self._watcher_ids = itertools.count(1)
        self._closed = False
        self.fetcher = LogRangeFetcher(
            transport,
            retry_config=self.config.retry,
            call_timeout=self.config.call_timeout,
            max_concurrency=self.config.log_concurrency,
            metrics=self.metrics,
        )
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_url(
        cls,
        rpc_url: str,
        config: Optional[StreamConfig] = None,
        metrics: Optional[StreamMetrics] = None,
        **transport_kwargs,
    ) -> 'ChainClient':
        """Create a client over an HTTP JSON-RPC endpoint; the client owns the transport"""
        transport = JsonRpcTransport(rpc_url, **transport_kwargs)
        return cls(transport, config=config, metrics=metrics, owns_transport=True)

    @property
    def block_stream(self) -> Optional[BlockStreamController]:
        return self._blocks

    def watch_blocks(
        self,
        on_block: Callable[[BlockSummary], Any],
        on_revert: Optional[Callable[[BlockSummary], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> str:
        """
        Watch canonical blocks.

        on_block receives every applied block in ascending order; on_revert
        receives every block removed by a reorg, newest first, before the
        replacement blocks are applied. on_error receives non-fatal
        TransportFailures, the terminal UnrecoverableReorg and any
        SubscriptionCallbackError raised by these handlers.

        Returns:
            Subscription id for unwatch()

        Raises:
            UnrecoverableReorg: If the block stream was terminated and not resynced
        """
        self._ensure_open()
        controller = self._block_stream()
        if controller.terminated:
            raise controller.terminal_error

        subscription_id = controller.register(make_dispatcher(on_block, on_revert, on_error))
        if on_error is not None:
            self._error_handlers[subscription_id] = on_error
        controller.start()
        self.logger.info(f'Watching blocks (subscription {subscription_id})')
        return subscription_id

    def watch_events(
        self,
        event_filter: EventFilter,
        on_event: Callable[[LogEvent], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
    ) -> str:
        """
        Watch contract logs matching a filter.

        on_event receives LogEvents in (block_number, log_index) order; logs of
        a reverted block are delivered again with removed=True, in reverse order.

        Returns:
            Subscription id for unwatch()
        """
        self._ensure_open()
        watcher = EventWatcher(
            self.transport,
            event_filter,
            self.config,
            metrics=self.metrics,
            name=f'events-{next(self._watcher_ids)}',
            error_sink=self._on_callback_error,
        )
        subscription_id = watcher.register(make_dispatcher(on_event, on_error=on_error))
        if on_error is not None:
            self._error_handlers[subscription_id] = on_error
        self._watchers[subscription_id] = watcher
        watcher.start()
        self.logger.info(f"Watching events on '{watcher.name}' (subscription {subscription_id})")
        return subscription_id

    async def unwatch(self, subscription_id: str) -> bool:
        """
        Cancel a block or event subscription.

        The subscription is deactivated before the first suspension point; its
        handlers never run once this coroutine has returned.

        Returns:
            True if the subscription existed
        """
        self._error_handlers.pop(subscription_id, None)

        controller = self._blocks
        if controller is not None and controller.unregister(subscription_id):
            if len(controller.registry) == 0:
                await controller.stop()
                if not controller.terminated:
                    # An idle stream restarts from the head instead of replaying every block since
                    controller.tracker.reset()
                # A watcher may have registered while the stream was stopping
                if len(controller.registry) > 0 and not controller.terminated:
                    controller.start()
            self.logger.info(f'Stopped watching blocks (subscription {subscription_id})')
            return True

        watcher = self._watchers.pop(subscription_id, None)
        if watcher is not None:
            watcher.unregister(subscription_id)
            await watcher.close()
            self.logger.info(f"Stopped watching events on '{watcher.name}' (subscription {subscription_id})")
            return True

        return False

    async def get_logs(self, request: LogRangeRequest) -> List[LogEntry]:
        """Fetch logs for a range, ordered by (block_number, log_index)"""
        self._ensure_open()
        return await self.fetcher.fetch(request)

    async def get_logs_table(self, request: LogRangeRequest) -> pa.Table:
        """Fetch logs for a range as a pyarrow Table"""
        return logs_to_arrow(await self.get_logs(request))

    async def resync(self, safe_block: int) -> BlockSummary:
        """Restart the block stream from a trusted block, e.g. after an unrecoverable reorg"""
        self._ensure_open()
        return await self._block_stream().resync(safe_block)

    async def close(self) -> None:
        """Stop every stream, then close the transport if this client created it"""
        if self._closed:
            return
        self._closed = True

        if self._blocks is not None:
            await self._blocks.stop()
            self._blocks.registry.close()
        watchers = list(self._watchers.values())
        self._watchers.clear()
        for watcher in watchers:
            await watcher.close()
        self._error_handlers.clear()

        if self._owns_transport and hasattr(self.transport, 'aclose'):
            await self.transport.aclose()
        self.logger.info('Chain client closed')

    async def __aenter__(self) -> 'ChainClient':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _block_stream(self) -> BlockStreamController:
        if self._blocks is None:
            self._blocks = BlockStreamController(
                self.transport,
                self.config,
                metrics=self.metrics,
                name='blocks',
                error_sink=self._on_callback_error,
            )
        return self._blocks

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError('ChainClient is closed')

    def _on_callback_error(self, error: SubscriptionCallbackError) -> None:
        handler = self._error_handlers.get(error.subscription_id)
        if handler is None:
            self.logger.warning(f'Subscriber callback failed: {error.message}')
            return
        result = handler(error)
        if inspect.isawaitable(result):
            # Error sinks are synchronous; an async handler is run in the background
            asyncio.ensure_future(result)
