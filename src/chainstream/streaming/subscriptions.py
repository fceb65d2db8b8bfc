"""
Subscription registry that fans stream events out to consumer callbacks.

Plain callables are invoked inline on the producer loop. Coroutine functions
get a private queue and worker task so a slow consumer never stalls the
producer, while events still reach each subscriber in publication order.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import SubscriptionCallbackError

ErrorSink = Callable[[SubscriptionCallbackError], Any]


@dataclass
class Subscription:
    """A registered callback; consumers only ever see its id"""

    id: str
    callback: Callable[[Any], Any]
    active: bool = True
    is_async: bool = False
    queue: Optional[asyncio.Queue] = field(default=None, repr=False)
    worker: Optional[asyncio.Task] = field(default=None, repr=False)


class SubscriptionRegistry:
    """
    Registry of active subscriber callbacks keyed by opaque ids.

    publish() iterates a snapshot of the active subscriptions and re-checks each
    subscription's ``active`` flag right before invoking it, so callbacks may
    register or unregister (themselves or others) during delivery, and a callback
    never fires once unregister() has returned.
    """

    def __init__(self, name: str = 'stream', error_sink: Optional[ErrorSink] = None, metrics=None):
        self.name = name
        self._subscriptions: Dict[str, Subscription] = {}
        self._error_sink = error_sink
        self._metrics = metrics
        self._closed = False
        self.logger = logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription_id: str) -> bool:
        return subscription_id in self._subscriptions

    @property
    def closed(self) -> bool:
        return self._closed

    def ids(self) -> List[str]:
        return list(self._subscriptions)

    def register(self, callback: Callable[[Any], Any]) -> str:
        """
        Register a callback and return its subscription id.

        Raises:
            RuntimeError: If the registry has been closed
        """
        if self._closed:
            raise RuntimeError(f"Subscription registry '{self.name}' is closed")
        if not callable(callback):
            raise TypeError(f'callback must be callable, got {type(callback).__name__}')

        subscription = Subscription(
            id=uuid.uuid4().hex,
            callback=callback,
            is_async=inspect.iscoroutinefunction(callback),
        )
        self._subscriptions[subscription.id] = subscription
        self._update_gauge()
        self.logger.debug(f"Registered subscription {subscription.id} on '{self.name}'")
        return subscription.id

    def unregister(self, subscription_id: str) -> bool:
        """
        Deactivate and remove a subscription.

        Returns:
            True if the subscription existed, False otherwise
        """
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        self._deactivate(subscription)
        self._update_gauge()
        self.logger.debug(f"Unregistered subscription {subscription_id} from '{self.name}'")
        return True

    def publish(self, event: Any) -> int:
        """
        Deliver an event to every active subscription.

        Returns:
            Number of subscriptions the event was handed to
        """
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if not subscription.active:
                continue
            if subscription.is_async:
                self._enqueue(subscription, event)
            else:
                self._invoke(subscription, event)
            delivered += 1
        return delivered

    def close(self) -> None:
        """Deactivate every subscription and refuse new registrations"""
        self._closed = True
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            self._deactivate(subscription)
        self._update_gauge()

    async def drain(self) -> None:
        """Wait until every async subscriber has consumed its queued events.

        A subscriber that drains from inside its own callback skips its own queue,
        which cannot empty before that callback returns.
        """
        current = _current_task()
        queues = [
            s.queue for s in self._subscriptions.values() if s.queue is not None and s.worker is not current
        ]
        for queue in queues:
            await queue.join()

    def _invoke(self, subscription: Subscription, event: Any) -> None:
        try:
            subscription.callback(event)
        except Exception as e:
            self._report(subscription, event, e)

    def _enqueue(self, subscription: Subscription, event: Any) -> None:
        if subscription.worker is None:
            subscription.queue = asyncio.Queue()
            subscription.worker = asyncio.get_running_loop().create_task(
                self._run_worker(subscription), name=f'{self.name}-subscriber-{subscription.id[:8]}'
            )
        subscription.queue.put_nowait(event)

    async def _run_worker(self, subscription: Subscription) -> None:
        queue = subscription.queue
        while subscription.active:
            event = await queue.get()
            try:
                if subscription.active:
                    await subscription.callback(event)
            except Exception as e:
                self._report(subscription, event, e)
            finally:
                queue.task_done()

    def _deactivate(self, subscription: Subscription) -> None:
        subscription.active = False
        worker = subscription.worker
        if worker is not None and worker is not _current_task():
            worker.cancel()

    def _report(self, subscription: Subscription, event: Any, error: Exception) -> None:
        wrapped = SubscriptionCallbackError(subscription.id, error, event)
        if self._metrics is not None:
            self._metrics.callback_errors.labels(stream=self.name).inc()
        if self._error_sink is None:
            self.logger.warning(f"Isolated subscriber failure on '{self.name}': {wrapped.message}")
            return
        try:
            self._error_sink(wrapped)
        except Exception:
            self.logger.exception(f"Error sink for '{self.name}' raised while reporting {wrapped.message}")

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.active_subscriptions.labels(stream=self.name).set(len(self._subscriptions))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
