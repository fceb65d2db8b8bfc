"""HTTP JSON-RPC transport.

This module provides JsonRpcTransport, an httpx-based implementation of the
Transport protocol for Ethereum-compatible nodes.
"""

import itertools
import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..errors import TransportFailure, map_rpc_error
from ..streaming.resilience import AdaptiveRateLimiter, BackPressureConfig, ErrorClassifier
from ..streaming.types import BlockSummary, LogEntry, LogRangeRequest
from .models import RpcBlock, RpcLog


def to_hex_block(number: int) -> str:
    return hex(int(number))


def build_log_filter(request: LogRangeRequest) -> Dict[str, Any]:
    """Build the eth_getLogs filter object for a resolved request."""
    if not request.is_resolved:
        raise ValueError('Log request must be resolved to concrete block numbers')

    params: Dict[str, Any] = {
        'fromBlock': to_hex_block(request.from_block),
        'toBlock': to_hex_block(request.to_block),
    }
    if request.address is not None:
        if isinstance(request.address, str):
            params['address'] = request.address.lower()
        else:
            params['address'] = [a.lower() for a in request.address]
    if request.topics is not None:
        topics: List[Any] = []
        for topic in request.topics:
            if topic is None:
                topics.append(None)
            elif isinstance(topic, str):
                topics.append(topic.lower())
            else:
                topics.append([t.lower() for t in topic])
        params['topics'] = topics
    return params


class JsonRpcTransport:
    """HTTP JSON-RPC client implementing the Transport protocol.

    Args:
        rpc_url: Node endpoint URL
        timeout: HTTP timeout in seconds (the engine applies its own per-call timeout on top)
        max_connections: Connection pool size
        headers: Extra HTTP headers (e.g. API keys)
        back_pressure: Adaptive back pressure applied when the node rate-limits

    The CHAINSTREAM_RPC_AUTH_TOKEN environment variable, when set, is sent as a
    Bearer token unless an Authorization header is given explicitly.

    Example:
        >>> transport = JsonRpcTransport('https://eth.example.org')
        >>> head = await transport.fetch_head()
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 20.0,
        max_connections: int = 64,
        headers: Optional[Dict[str, str]] = None,
        back_pressure: Optional[BackPressureConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        headers = dict(headers or {})
        token = os.getenv('CHAINSTREAM_RPC_AUTH_TOKEN')
        if token and 'Authorization' not in headers:
            headers['Authorization'] = f'Bearer {token}'

        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max(1, max_connections // 2)),
            headers=headers,
        )
        self._ids = itertools.count(1)
        self._rate_limiter = AdaptiveRateLimiter(back_pressure or BackPressureConfig())
        self.logger = logging.getLogger(__name__)

    async def _request(
        self,
        method: str,
        params: List[Any],
        operation: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> Any:
        """Issue one JSON-RPC call and return its result.

        Raises:
            TransportFailure: For HTTP, connectivity and node errors
            RangeRejected: For range-limit errors on log queries
        """
        await self._rate_limiter.wait()
        payload = {'jsonrpc': '2.0', 'id': next(self._ids), 'method': method, 'params': params}

        try:
            response = await self._client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            self._rate_limiter.record_timeout()
            raise TransportFailure(f'{method} timed out: {e}', operation=operation, error_code='TIMEOUT') from e
        except httpx.TransportError as e:
            raise TransportFailure(f'{method} connection error: {e}', operation=operation) from e

        if response.status_code == 429:
            self._rate_limiter.record_rate_limit()
            raise TransportFailure(f'{method} HTTP 429 Too Many Requests', operation=operation, error_code='RATE_LIMITED')
        if response.status_code >= 400:
            message = f'{method} HTTP {response.status_code}'
            raise TransportFailure(
                message, operation=operation, retriable=ErrorClassifier.is_transient(message), error_code='HTTP_ERROR'
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportFailure(f'{method} returned invalid JSON', operation=operation, retriable=False) from e

        if 'error' in data:
            raise map_rpc_error(data['error'], operation=operation, from_block=from_block, to_block=to_block)

        self._rate_limiter.record_success()
        return data.get('result')

    def _parse_block(self, result: Any, operation: str) -> Optional[BlockSummary]:
        if result is None:
            return None
        try:
            return RpcBlock.model_validate(result).to_summary()
        except ValidationError as e:
            raise TransportFailure(
                f'Invalid block payload: {e}', operation=operation, retriable=False, error_code='INVALID_PAYLOAD'
            ) from e

    async def fetch_head(self) -> BlockSummary:
        result = await self._request('eth_getBlockByNumber', ['latest', False], 'fetch_head')
        block = self._parse_block(result, 'fetch_head')
        if block is None:
            raise TransportFailure('Node returned no head block', operation='fetch_head')
        return block

    async def fetch_block_by_number(self, number: int) -> Optional[BlockSummary]:
        result = await self._request('eth_getBlockByNumber', [to_hex_block(number), False], 'fetch_block_by_number')
        return self._parse_block(result, 'fetch_block_by_number')

    async def fetch_block_by_hash(self, block_hash: str) -> Optional[BlockSummary]:
        result = await self._request('eth_getBlockByHash', [block_hash, False], 'fetch_block_by_hash')
        return self._parse_block(result, 'fetch_block_by_hash')

    async def fetch_logs(self, request: LogRangeRequest) -> List[LogEntry]:
        result = await self._request(
            'eth_getLogs',
            [build_log_filter(request)],
            'fetch_logs',
            from_block=request.from_block,
            to_block=request.to_block,
        )
        try:
            return [RpcLog.model_validate(raw).to_entry() for raw in (result or [])]
        except ValidationError as e:
            raise TransportFailure(
                f'Invalid log payload: {e}', operation='fetch_logs', retriable=False, error_code='INVALID_PAYLOAD'
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> 'JsonRpcTransport':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
