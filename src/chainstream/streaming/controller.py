"""
Block stream controller.

Drives head polling (or pushed heads), feeds every head through the reorg
detector and publishes ordered BlockApplied / BlockReverted events to the
stream's subscription registry.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from ..errors import ChainStreamError, TransportFailure, UnrecoverableReorg
from ..metrics import StreamMetrics, get_metrics
from ..transport.base import supports_push
from .history import ChainHistoryTracker
from .reorg import ReorgDetector
from .resilience import call_with_retry
from .subscriptions import ErrorSink, SubscriptionRegistry
from .types import (
    BlockApplied,
    BlockReverted,
    BlockSummary,
    Extended,
    Reorged,
    ReorgOutcome,
    StreamError,
    StreamStats,
    StreamTerminated,
    Unrecoverable,
)

if TYPE_CHECKING:
    from ..config import StreamConfig

T = TypeVar('T')


class BlockStreamController:
    """
    Owns one block stream: its tracker, its registry and its producer task.

    The producer task is the only writer of the tracker. Events for a reorg
    are always published reverts first (newest to oldest), then applies
    (oldest to newest).

    Example:
        >>> controller = BlockStreamController(transport, StreamConfig(poll_interval=2.0))
        >>> sub_id = controller.register(print)
        >>> controller.start()
        >>> ...
        >>> await controller.stop()
    """

    def __init__(
        self,
        transport,
        config: 'StreamConfig',
        metrics: Optional[StreamMetrics] = None,
        name: str = 'blocks',
        error_sink: Optional[ErrorSink] = None,
    ):
        self.transport = transport
        self.config = config
        self.name = name
        self.metrics = metrics or get_metrics()
        self.stats = StreamStats()
        self.tracker = ChainHistoryTracker(config.tracked_depth)
        self.detector = ReorgDetector(self.tracker, transport, max_walk_back=config.max_walk_back, call=self._call)
        self._error_sink = error_sink
        self.registry = SubscriptionRegistry(name, error_sink=error_sink, metrics=self.metrics)
        self._task: Optional[asyncio.Task] = None
        self._head_subscription = None
        self._terminal_error: Optional[UnrecoverableReorg] = None
        self.logger = logging.getLogger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def terminated(self) -> bool:
        return self._terminal_error is not None

    @property
    def terminal_error(self) -> Optional[UnrecoverableReorg]:
        return self._terminal_error

    def register(self, callback: Callable[[Any], Any]) -> str:
        """Subscribe to this stream's events; see SubscriptionRegistry.register"""
        return self.registry.register(callback)

    def unregister(self, subscription_id: str) -> bool:
        return self.registry.unregister(subscription_id)

    def start(self) -> None:
        """Start the producer task (no-op when already running).

        Raises:
            RuntimeError: If the stream was terminated by an unrecoverable reorg
        """
        if self._terminal_error is not None:
            raise RuntimeError(f"Stream '{self.name}' was terminated ({self._terminal_error}); resync it first")
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f'{self.name}-stream')

    async def stop(self) -> None:
        """Cancel the producer task and wait for it.

        Events already handed to async subscribers are delivered before this
        coroutine returns; no subscriber callback fires afterwards.
        """
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_head_subscription()
        if self.terminated and not self.registry.closed:
            # Stopped mid-termination, e.g. by a subscriber resyncing from its error
            # handler. Closing from the calling task leaves that subscriber running
            self.registry.close()
        await self.registry.drain()
        self.logger.debug(f"Stream '{self.name}' stopped")

    async def resync(self, safe_block: int) -> BlockSummary:
        """
        Restart the stream from a trusted block after an unrecoverable reorg.

        Forgets all tracked history, seeds the tracker with the canonical block
        at ``safe_block`` and restarts the producer. Subscriptions closed by a
        termination are not revived; consumers must watch again.

        Returns:
            The block the stream was re-seeded with
        """
        await self.stop()
        block = await self._call('fetch_block_by_number', lambda: self.transport.fetch_block_by_number(safe_block))
        if block is None:
            raise ValueError(f'Safe block {safe_block} is not known to the remote node')

        self.tracker.reset(block)
        if self.registry.closed:
            self.registry = SubscriptionRegistry(self.name, error_sink=self._error_sink, metrics=self.metrics)
        self._terminal_error = None
        self.metrics.chain_head.labels(stream=self.name).set(block.number)
        self.logger.info(f"Stream '{self.name}' resynced from block {block}")
        self.start()
        return block

    async def tick(self) -> None:
        """Fetch the current head once and process it"""
        try:
            head = await self._call('fetch_head', self.transport.fetch_head)
        except TransportFailure as e:
            self._publish_error(e)
            return
        await self.process_head(head)

    async def process_head(self, head: BlockSummary) -> None:
        """Reconcile one head with the tracker and publish the resulting events"""
        try:
            async for outcome in self.detector.reconcile(head):
                if isinstance(outcome, Unrecoverable):
                    await self._terminate(UnrecoverableReorg(outcome.observed_depth, outcome.tracked_depth))
                else:
                    self._publish_outcome(outcome)
        except ChainStreamError as e:
            self._publish_error(e)

    async def _run(self) -> None:
        mode = 'push' if self._use_push() else 'poll'
        self.logger.info(f"Stream '{self.name}' started in {mode} mode (tracked depth {self.config.tracked_depth})")
        try:
            if mode == 'push' and await self._run_push():
                return
            await self._run_poll()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception(f"Stream '{self.name}' failed unexpectedly")
            raise

    def _use_push(self) -> bool:
        if not self.config.use_push:
            return False
        if not supports_push(self.transport):
            self.logger.warning(f"Stream '{self.name}': transport has no head subscription, falling back to polling")
            return False
        return True

    async def _run_poll(self) -> None:
        while True:
            await self.tick()
            if self.terminated:
                return
            await asyncio.sleep(self.config.poll_interval)

    async def _run_push(self) -> bool:
        """Consume pushed heads. Returns False when the subscription could not be opened."""
        heads: asyncio.Queue = asyncio.Queue()

        async def on_head(block: BlockSummary) -> None:
            heads.put_nowait(block)

        try:
            self._head_subscription = await self._call(
                'subscribe_heads', lambda: self.transport.subscribe_heads(on_head)
            )
        except TransportFailure as e:
            self.logger.warning(f"Stream '{self.name}': head subscription failed ({e.message}), polling instead")
            self._publish_error(e)
            return False

        try:
            await self.tick()
            while not self.terminated:
                head = await heads.get()
                # Only the newest pushed head matters; skipped heights are filled by number
                while not heads.empty():
                    head = heads.get_nowait()
                await self.process_head(head)
        finally:
            await self._close_head_subscription()
        return True

    async def _close_head_subscription(self) -> None:
        subscription, self._head_subscription = self._head_subscription, None
        if subscription is not None:
            try:
                await subscription.unsubscribe()
            except Exception as e:
                self.logger.warning(f"Stream '{self.name}': failed to cancel head subscription: {e}")

    async def _call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        def on_retry(reason: str, error: Exception) -> None:
            self.metrics.retry_attempts.labels(operation=operation, reason=reason).inc()

        with self.metrics.track_call(operation):
            return await call_with_retry(
                operation, call, self.config.retry, timeout=self.config.call_timeout, on_retry=on_retry
            )

    def _publish_outcome(self, outcome: ReorgOutcome) -> None:
        if isinstance(outcome, Extended):
            if outcome.duplicate:
                self.logger.debug(f"Stream '{self.name}': head {outcome.applied_block} already tracked")
            for block in outcome.applied_blocks:
                self._publish_applied(block)
        elif isinstance(outcome, Reorged):
            self.stats.record_reorg(outcome.depth)
            self.metrics.reorg_events.labels(stream=self.name).inc()
            self.metrics.reorg_depth.labels(stream=self.name).observe(outcome.depth)
            for block in outcome.reverted_blocks:
                self.stats.blocks_reverted += 1
                self.metrics.blocks_reverted.labels(stream=self.name).inc()
                self.registry.publish(BlockReverted(block, outcome.depth))
            for block in outcome.applied_blocks:
                self._publish_applied(block)
        else:
            raise TypeError(f'Unknown reorg outcome: {outcome!r}')

    def _publish_applied(self, block: BlockSummary) -> None:
        self.stats.blocks_applied += 1
        self.metrics.blocks_applied.labels(stream=self.name).inc()
        self.metrics.chain_head.labels(stream=self.name).set(self.tracker.tip.number)
        self.logger.debug(f"Stream '{self.name}': applied block {block}")
        self.registry.publish(BlockApplied(block))

    def _publish_error(self, error: ChainStreamError) -> None:
        self.stats.transport_errors += 1
        self.stats.last_error = str(error)
        self.logger.warning(f"Stream '{self.name}': {error}")
        self.registry.publish(StreamError(error))

    async def _terminate(self, error: UnrecoverableReorg) -> None:
        self._terminal_error = error
        self.stats.last_error = str(error)
        self.metrics.unrecoverable_reorgs.labels(stream=self.name).inc()
        self.logger.error(f"Stream '{self.name}' terminated: {error.message}. Resync from a safe block to continue.")
        self.registry.publish(StreamTerminated(error))
        # Let async subscribers consume the terminal event before their workers are cancelled
        await self.registry.drain()
        self.registry.close()
