"""
Unit tests for SubscriptionRegistry fan-out and isolation guarantees.
"""

import asyncio

import pytest
from prometheus_client import REGISTRY

from chainstream.errors import SubscriptionCallbackError
from chainstream.streaming.subscriptions import SubscriptionRegistry


@pytest.mark.unit
class TestSubscriptionRegistry:
    """Test registration, delivery and unregistration"""

    def test_register_returns_distinct_ids(self):
        registry = SubscriptionRegistry()

        first = registry.register(lambda event: None)
        second = registry.register(lambda event: None)

        assert first != second
        assert len(registry) == 2
        assert registry.ids() == [first, second]

    def test_no_delivery_after_unregister(self):
        registry = SubscriptionRegistry()
        received = []
        sub_id = registry.register(received.append)

        registry.publish('a')
        registry.publish('b')
        registry.publish('c')
        assert registry.unregister(sub_id)
        registry.publish('d')
        registry.publish('e')

        assert received == ['a', 'b', 'c']
        assert sub_id not in registry

    def test_unregister_unknown_id(self):
        registry = SubscriptionRegistry()
        assert registry.unregister('missing') is False

    def test_self_unsubscribe_during_publish(self):
        registry = SubscriptionRegistry()
        received = []
        ids = {}

        def once(event):
            received.append(('once', event))
            registry.unregister(ids['once'])

        ids['once'] = registry.register(once)
        registry.register(lambda event: received.append(('always', event)))

        assert registry.publish(1) == 2
        registry.publish(2)

        assert received == [('once', 1), ('always', 1), ('always', 2)]

    def test_unsubscribing_another_skips_it_in_same_publish(self):
        registry = SubscriptionRegistry()
        received = []
        ids = {}

        def killer(event):
            received.append('killer')
            registry.unregister(ids['victim'])

        registry.register(killer)
        ids['victim'] = registry.register(lambda event: received.append('victim'))

        registry.publish('x')

        assert received == ['killer']

    def test_registration_during_publish_starts_with_next_event(self):
        registry = SubscriptionRegistry()
        late = []

        def adder(event):
            if event == 1:
                registry.register(late.append)

        registry.register(adder)
        registry.publish(1)
        registry.publish(2)

        assert late == [2]

    def test_failing_callback_is_isolated(self):
        errors = []
        registry = SubscriptionRegistry('blocks', error_sink=errors.append)
        received = []

        def broken(event):
            raise RuntimeError('consumer bug')

        broken_id = registry.register(broken)
        registry.register(received.append)

        registry.publish('event')

        assert received == ['event']
        assert len(errors) == 1
        assert isinstance(errors[0], SubscriptionCallbackError)
        assert errors[0].subscription_id == broken_id
        assert isinstance(errors[0].cause, RuntimeError)
        assert errors[0].event == 'event'

    def test_failing_error_sink_is_contained(self):
        def bad_sink(error):
            raise ValueError('sink bug')

        registry = SubscriptionRegistry(error_sink=bad_sink)
        received = []
        registry.register(lambda event: 1 / 0)
        registry.register(received.append)

        registry.publish('event')

        assert received == ['event']

    def test_rejects_non_callable(self):
        registry = SubscriptionRegistry()
        with pytest.raises(TypeError, match='callable'):
            registry.register('not a function')

    def test_close(self):
        registry = SubscriptionRegistry('blocks')
        received = []
        registry.register(received.append)

        registry.close()

        assert registry.closed
        assert len(registry) == 0
        assert registry.publish('event') == 0
        assert received == []
        with pytest.raises(RuntimeError, match='closed'):
            registry.register(received.append)

    def test_active_subscription_gauge(self, prometheus_metrics):
        registry = SubscriptionRegistry('gauged', metrics=prometheus_metrics)
        sub_id = registry.register(lambda event: None)
        registry.register(lambda event: None)
        registry.unregister(sub_id)

        assert REGISTRY.get_sample_value('chainstream_active_subscriptions', {'stream': 'gauged'}) == 1


@pytest.mark.unit
class TestAsyncSubscribers:
    """Test coroutine callbacks delivered through per-subscriber workers"""

    @pytest.mark.asyncio
    async def test_async_callback_receives_events_in_order(self):
        registry = SubscriptionRegistry()
        received = []

        async def consumer(event):
            await asyncio.sleep(0.001 * (5 - event))
            received.append(event)

        registry.register(consumer)
        for event in range(5):
            registry.publish(event)
        await registry.drain()

        assert received == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_slow_async_consumer_does_not_block_producer(self):
        registry = SubscriptionRegistry()
        fast = []
        release = asyncio.Event()

        async def slow(event):
            await release.wait()

        registry.register(slow)
        registry.register(fast.append)
        for event in range(3):
            registry.publish(event)

        assert fast == [0, 1, 2]
        release.set()
        await registry.drain()

    @pytest.mark.asyncio
    async def test_async_failure_reported_to_sink(self):
        errors = []
        registry = SubscriptionRegistry(error_sink=errors.append)

        async def broken(event):
            raise ValueError(f'bad {event}')

        registry.register(broken)
        registry.publish(1)
        registry.publish(2)
        await registry.drain()

        assert [str(e.cause) for e in errors] == ['bad 1', 'bad 2']

    @pytest.mark.asyncio
    async def test_unregister_stops_async_delivery(self):
        registry = SubscriptionRegistry()
        received = []
        gate = asyncio.Event()

        async def consumer(event):
            await gate.wait()
            received.append(event)

        sub_id = registry.register(consumer)
        registry.publish(1)
        registry.publish(2)
        await asyncio.sleep(0)
        registry.unregister(sub_id)
        gate.set()
        await asyncio.sleep(0.01)

        assert received == []

    @pytest.mark.asyncio
    async def test_drain_from_own_callback_skips_own_queue(self):
        registry = SubscriptionRegistry()
        drained = []

        async def consumer(event):
            await registry.drain()
            drained.append(event)

        registry.register(consumer)
        registry.publish(1)
        await asyncio.wait_for(registry.drain(), 1.0)

        assert drained == [1]

    @pytest.mark.asyncio
    async def test_close_from_own_callback_finishes_that_callback(self):
        registry = SubscriptionRegistry()
        finished = []

        async def consumer(event):
            registry.close()
            await asyncio.sleep(0)
            finished.append(event)

        registry.register(consumer)
        registry.publish(1)
        registry.publish(2)
        await asyncio.wait_for(registry.drain(), 1.0)
        await asyncio.sleep(0.01)

        assert finished == [1]
        assert registry.closed
