"""
Metrics instrumentation for chain streaming.

This module provides observability metrics using Prometheus client.
Metrics can be exported via HTTP endpoint.

Usage:
    from chainstream.metrics import get_metrics

    # Get the global metrics instance
    metrics = get_metrics()

    # Record stream activity
    metrics.blocks_applied.labels(stream='blocks').inc()
    metrics.reorg_depth.labels(stream='blocks').observe(2)

    # Start HTTP server to expose metrics
    from chainstream.metrics import start_metrics_server
    start_metrics_server(port=8000)
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest, start_http_server

# Transport round trips - network latency, can be slow for wide log queries
TRANSPORT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

# Reorg depth in blocks
REORG_DEPTH_BUCKETS = (1, 2, 3, 5, 8, 13, 21, 34, 64, 128)

METRIC_ATTRIBUTES = (
    'blocks_applied',
    'blocks_reverted',
    'reorg_events',
    'reorg_depth',
    'unrecoverable_reorgs',
    'chain_head',
    'transport_errors',
    'transport_latency',
    'retry_attempts',
    'log_range_splits',
    'logs_fetched',
    'callback_errors',
    'active_subscriptions',
)


@dataclass
class MetricsConfig:
    """Configuration for metrics collection.

    Attributes:
        enabled: Whether metrics collection is enabled
        namespace: Prefix for all metric names (default: 'chainstream')
        subsystem: Optional subsystem name for grouping metrics
        default_labels: Labels applied to all metrics
    """

    enabled: bool = True
    namespace: str = 'chainstream'
    subsystem: str = ''
    default_labels: Dict[str, str] = field(default_factory=dict)


class NullMetric:
    """No-op metric that silently ignores all operations.

    Used when metrics are disabled.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def labels(self, *args: Any, **kwargs: Any) -> 'NullMetric':
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def dec(self, amount: float = 1) -> None:
        pass

    def set(self, value: float) -> None:
        pass

    def observe(self, value: float) -> None:
        pass


class StreamMetrics:
    """Central metrics registry for chain streaming.

    Provides Prometheus metrics for monitoring streams:
    - Blocks applied / reverted (counters)
    - Reorg events and depth (counter, histogram)
    - Canonical head height (gauge)
    - Transport errors, latency and retries
    - Log range splits and logs fetched
    - Subscriber callback failures and active subscriptions

    Thread-safe singleton implementation.
    """

    _instance: Optional['StreamMetrics'] = None
    _lock = threading.Lock()

    def __new__(cls, config: Optional[MetricsConfig] = None) -> 'StreamMetrics':
        """Singleton pattern with lazy initialization."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instance = instance
        return cls._instance

    def __init__(self, config: Optional[MetricsConfig] = None) -> None:
        if self._initialized:
            return

        self._config = config or MetricsConfig()
        self._setup_metrics()
        self._initialized = True

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def _setup_metrics(self) -> None:
        """Set up all Prometheus metrics."""
        if not self._config.enabled:
            self._setup_null_metrics()
            return

        ns = self._config.namespace
        ss = self._config.subsystem

        self.blocks_applied: Counter = self._get_or_create_metric(
            Counter,
            name='blocks_applied_total',
            documentation='Blocks published as applied',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.blocks_reverted: Counter = self._get_or_create_metric(
            Counter,
            name='blocks_reverted_total',
            documentation='Blocks published as reverted',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.reorg_events: Counter = self._get_or_create_metric(
            Counter,
            name='reorg_events_total',
            documentation='Reconciled blockchain reorganization events',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.reorg_depth: Histogram = self._get_or_create_metric(
            Histogram,
            name='reorg_depth_blocks',
            documentation='Depth of reconciled reorganizations',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
            buckets=REORG_DEPTH_BUCKETS,
        )

        self.unrecoverable_reorgs: Counter = self._get_or_create_metric(
            Counter,
            name='unrecoverable_reorgs_total',
            documentation='Reorganizations deeper than the tracked window',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.chain_head: Gauge = self._get_or_create_metric(
            Gauge,
            name='chain_head_block',
            documentation='Height of the canonical tip tracked by the stream',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.transport_errors: Counter = self._get_or_create_metric(
            Counter,
            name='transport_errors_total',
            documentation='Transport failures surfaced after retries',
            labelnames=['operation', 'error_type'],
            namespace=ns,
            subsystem=ss,
        )

        self.transport_latency: Histogram = self._get_or_create_metric(
            Histogram,
            name='transport_latency_seconds',
            documentation='Time spent in transport calls',
            labelnames=['operation'],
            namespace=ns,
            subsystem=ss,
            buckets=TRANSPORT_BUCKETS,
        )

        self.retry_attempts: Counter = self._get_or_create_metric(
            Counter,
            name='retry_attempts_total',
            documentation='Total retry attempts',
            labelnames=['operation', 'reason'],
            namespace=ns,
            subsystem=ss,
        )

        self.log_range_splits: Counter = self._get_or_create_metric(
            Counter,
            name='log_range_splits_total',
            documentation='Log ranges bisected after a range rejection',
            namespace=ns,
            subsystem=ss,
        )

        self.logs_fetched: Counter = self._get_or_create_metric(
            Counter,
            name='logs_fetched_total',
            documentation='Log entries returned by the remote node',
            namespace=ns,
            subsystem=ss,
        )

        self.callback_errors: Counter = self._get_or_create_metric(
            Counter,
            name='callback_errors_total',
            documentation='Subscriber callbacks that raised',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

        self.active_subscriptions: Gauge = self._get_or_create_metric(
            Gauge,
            name='active_subscriptions',
            documentation='Number of active subscriptions',
            labelnames=['stream'],
            namespace=ns,
            subsystem=ss,
        )

    def _get_or_create_metric(self, metric_class: type, name: str, **kwargs) -> Any:
        """Get an existing metric from the registry or create a new one.

        This handles the case where metrics might already be registered
        (e.g., during test runs) by returning the existing metric instead
        of failing with a duplicate registration error.
        """
        ns = kwargs.get('namespace', '')
        ss = kwargs.get('subsystem', '')

        # Only strip _total suffix for Counter metrics (prometheus auto-adds it)
        metric_name = name
        if metric_class == Counter and name.endswith('_total'):
            metric_name = name[:-6]
        full_name = '_'.join(filter(None, [ns, ss, metric_name]))

        try:
            return metric_class(name=name, **kwargs)
        except ValueError as e:
            if 'Duplicated timeseries' in str(e) and full_name in REGISTRY._names_to_collectors:
                return REGISTRY._names_to_collectors[full_name]
            raise

    def _setup_null_metrics(self) -> None:
        """Set up no-op metrics when metrics are disabled."""
        for attribute in METRIC_ATTRIBUTES:
            setattr(self, attribute, NullMetric())

    @contextmanager
    def track_call(self, operation: str) -> Iterator[None]:
        """Context manager timing a transport call and counting its failure.

        Usage:
            with metrics.track_call('fetch_head'):
                head = await transport.fetch_head()
        """
        start_time = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.transport_errors.labels(operation=operation, error_type=type(e).__name__).inc()
            raise
        finally:
            self.transport_latency.labels(operation=operation).observe(time.perf_counter() - start_time)

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (useful for testing).

        This also unregisters metrics from the Prometheus registry to allow
        re-registration with the same names.
        """
        with cls._lock:
            if cls._instance is not None:
                for attribute in METRIC_ATTRIBUTES:
                    metric = getattr(cls._instance, attribute, None)
                    if metric is not None and not isinstance(metric, NullMetric):
                        try:
                            REGISTRY.unregister(metric)
                        except KeyError:
                            pass  # Metric may not be registered
            cls._instance = None


def get_metrics(config: Optional[MetricsConfig] = None) -> StreamMetrics:
    """Get the global metrics instance.

    Args:
        config: Optional configuration (only used on first call)

    Returns:
        The singleton StreamMetrics instance
    """
    return StreamMetrics(config)


def start_metrics_server(port: int = 8000, addr: str = '') -> None:
    """Start HTTP server to expose Prometheus metrics.

    Args:
        port: Port to listen on (default: 8000)
        addr: Address to bind to (default: all interfaces)
    """
    start_http_server(port, addr)


def generate_metrics_text() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest(REGISTRY)
