"""Transport layer: the protocol the engine consumes and an HTTP JSON-RPC adapter."""

from .base import HeadSubscription, PushTransport, Transport, supports_push
from .jsonrpc import JsonRpcTransport, build_log_filter
from .models import RpcBlock, RpcLog

__all__ = [
    'Transport',
    'PushTransport',
    'HeadSubscription',
    'supports_push',
    'JsonRpcTransport',
    'build_log_filter',
    'RpcBlock',
    'RpcLog',
]
