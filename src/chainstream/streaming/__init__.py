# Chain-aware streaming: history tracking, reorg reconciliation, block/event streams and log queries

from .types import (
    EARLIEST,
    LATEST,
    BlockApplied,
    BlockReverted,
    BlockSummary,
    EventFilter,
    Extended,
    LogEntry,
    LogEvent,
    LogRangeRequest,
    Reorged,
    ReorgOutcome,
    StreamError,
    StreamEvent,
    StreamStats,
    StreamTerminated,
    Unrecoverable,
)
from .history import DEFAULT_TRACKED_DEPTH, ChainHistoryTracker, ChainSegment
from .resilience import (
    AdaptiveRateLimiter,
    BackPressureConfig,
    ErrorClassifier,
    ExponentialBackoff,
    RetryConfig,
    call_with_retry,
)
from .subscriptions import Subscription, SubscriptionRegistry
from .reorg import ReorgDetector
from .controller import BlockStreamController
from .logs import LOG_SCHEMA, LogRangeFetcher, logs_to_arrow, sort_logs
from .events import EventWatcher

__all__ = [
    # Types
    'EARLIEST',
    'LATEST',
    'BlockSummary',
    'LogEntry',
    'LogRangeRequest',
    'EventFilter',
    'Extended',
    'Reorged',
    'Unrecoverable',
    'ReorgOutcome',
    'BlockApplied',
    'BlockReverted',
    'StreamError',
    'StreamTerminated',
    'StreamEvent',
    'LogEvent',
    'StreamStats',
    # History
    'DEFAULT_TRACKED_DEPTH',
    'ChainSegment',
    'ChainHistoryTracker',
    # Resilience
    'RetryConfig',
    'BackPressureConfig',
    'ErrorClassifier',
    'ExponentialBackoff',
    'AdaptiveRateLimiter',
    'call_with_retry',
    # Subscriptions
    'Subscription',
    'SubscriptionRegistry',
    # Streams
    'ReorgDetector',
    'BlockStreamController',
    'EventWatcher',
    # Logs
    'LOG_SCHEMA',
    'LogRangeFetcher',
    'logs_to_arrow',
    'sort_logs',
]
