"""chainstream - chain-aware block and event streaming with reorg reconciliation."""

from chainstream.client import ChainClient
from chainstream.config import StreamConfig
from chainstream.errors import (
    ChainStreamError,
    RangeRejected,
    SubscriptionCallbackError,
    TransportFailure,
    UnrecoverableReorg,
)
from chainstream.streaming.types import BlockSummary, EventFilter, LogEntry, LogEvent, LogRangeRequest

__all__ = [
    'ChainClient',
    'StreamConfig',
    'ChainStreamError',
    'TransportFailure',
    'RangeRejected',
    'UnrecoverableReorg',
    'SubscriptionCallbackError',
    'BlockSummary',
    'EventFilter',
    'LogEntry',
    'LogEvent',
    'LogRangeRequest',
]
