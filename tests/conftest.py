# tests/conftest.py
"""
Shared pytest configuration and fixtures for the chainstream test suite.
"""

import logging

import pytest

from chainstream.config import StreamConfig
from chainstream.metrics import MetricsConfig, StreamMetrics
from chainstream.streaming.resilience import RetryConfig
from tests.fixtures.fake_transport import FakeTransport, PushFakeTransport, make_chain

logging.basicConfig(level=logging.INFO)


@pytest.fixture
def null_metrics():
    """Disabled metrics so tests do not touch the global Prometheus registry"""
    StreamMetrics.reset_instance()
    metrics = StreamMetrics(MetricsConfig(enabled=False))
    yield metrics
    StreamMetrics.reset_instance()


@pytest.fixture
def prometheus_metrics():
    """Fresh Prometheus-backed metrics"""
    StreamMetrics.reset_instance()
    metrics = StreamMetrics(MetricsConfig())
    yield metrics
    StreamMetrics.reset_instance()


@pytest.fixture
def fast_retry():
    """Retry policy without delays"""
    return RetryConfig(max_retries=2, initial_backoff_ms=0, max_backoff_ms=0, jitter=False)


@pytest.fixture
def fast_config(fast_retry):
    """Stream configuration suitable for tight test loops"""
    return StreamConfig(tracked_depth=8, poll_interval=0.01, retry=fast_retry, call_timeout=1.0)


@pytest.fixture
def chain():
    """Five linked blocks, 100..104"""
    return make_chain(100, 5)


@pytest.fixture
def transport(chain):
    return FakeTransport(chain)


@pytest.fixture
def push_transport(chain):
    return PushFakeTransport(chain)


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line('markers', 'unit: Unit tests (fast, no external dependencies)')
    config.addinivalue_line('markers', 'integration: Integration tests (HTTP mocked with respx)')
