"""Exception hierarchy for chain streaming errors.

This module defines typed exceptions for the streaming engine and maps
JSON-RPC error objects returned by remote nodes onto them.
"""

from typing import Any, Dict, Optional


class ChainStreamError(Exception):
    """Base exception for chain streaming errors.

    Attributes:
        error_code: Machine-readable error code (SCREAMING_SNAKE_CASE)
        message: Human-readable error description
    """

    error_code = 'CHAIN_STREAM_ERROR'

    def __init__(self, message: str, error_code: Optional[str] = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message
        super().__init__(f'[{self.error_code}] {message}')


class TransportFailure(ChainStreamError):
    """Connectivity, timeout or node-side failure while talking to the remote node.

    Attributes:
        operation: Transport operation that failed (e.g. 'fetch_head')
        retriable: Whether the retry policy may re-issue the call
    """

    error_code = 'TRANSPORT_FAILURE'

    def __init__(self, message: str, operation: str = '', retriable: bool = True, error_code: Optional[str] = None):
        self.operation = operation
        self.retriable = retriable
        super().__init__(message, error_code)


class RangeRejected(ChainStreamError):
    """Remote node refused a log query because the block range is too large."""

    error_code = 'RANGE_REJECTED'

    def __init__(self, from_block: int, to_block: int, message: str = ''):
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(message or f'Range [{from_block}, {to_block}] rejected by remote node')


class UnrecoverableReorg(ChainStreamError):
    """Reorganization deeper than the tracked history window.

    Terminal for the affected stream; requires an explicit resync.
    """

    error_code = 'UNRECOVERABLE_REORG'

    def __init__(self, observed_depth: int, tracked_depth: int):
        self.observed_depth = observed_depth
        self.tracked_depth = tracked_depth
        super().__init__(
            f'Reorg of depth {observed_depth} or more forks below the tracked history (tracked depth {tracked_depth})'
        )


class SubscriptionCallbackError(ChainStreamError):
    """A subscriber callback raised while handling an event."""

    error_code = 'SUBSCRIPTION_CALLBACK_ERROR'

    def __init__(self, subscription_id: str, cause: BaseException, event: Any = None):
        self.subscription_id = subscription_id
        self.cause = cause
        self.event = event
        super().__init__(f'Callback for subscription {subscription_id} failed: {type(cause).__name__}: {cause}')


# Substrings used by common node implementations when a log query is too wide
RANGE_LIMIT_PATTERNS = [
    'block range',
    'range too large',
    'range is too large',
    'query returned more than',
    'more than 10000 results',
    'exceed maximum block range',
    'log response size exceeded',
    'response size exceeded',
    'too many blocks',
]

# Error codes treated as a range rejection unless the message reports rate limiting
RANGE_LIMIT_CODES = {-32005}


def map_rpc_error(
    error_data: Dict[str, Any],
    operation: str = '',
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
) -> ChainStreamError:
    """Map a JSON-RPC error object to a typed exception.

    Args:
        error_data: The 'error' member of a JSON-RPC response
        operation: Transport operation that produced the error
        from_block: Start of the queried range, for log queries
        to_block: End of the queried range, for log queries

    Returns:
        RangeRejected for range-limit errors on log queries, otherwise a
        TransportFailure whose retriable flag follows ErrorClassifier.
    """
    from .streaming.resilience import ErrorClassifier

    if not isinstance(error_data, dict):
        error_data = {'message': str(error_data)}

    code = error_data.get('code')
    message = str(error_data.get('message', 'Unknown RPC error'))

    retriable = ErrorClassifier.is_transient(message)
    # Some providers reuse range-limit codes for rate limiting, so transient messages win
    if from_block is not None and to_block is not None and not retriable:
        message_lower = message.lower()
        if code in RANGE_LIMIT_CODES or any(pattern in message_lower for pattern in RANGE_LIMIT_PATTERNS):
            return RangeRejected(from_block, to_block, message)

    return TransportFailure(
        f'RPC error {code}: {message}',
        operation=operation,
        retriable=retriable,
        error_code='RPC_ERROR',
    )
