"""Stream configuration.

StreamConfig can be built directly, from a dictionary (for example a parsed
JSON file) or from CHAINSTREAM_* environment variables.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional

from .streaming.history import DEFAULT_TRACKED_DEPTH
from .streaming.resilience import RetryConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = 'CHAINSTREAM_'

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off')


def default_retry_config() -> RetryConfig:
    """Retry policy tuned for node polling: a few quick retries, capped at 10s"""
    return RetryConfig(max_retries=3, initial_backoff_ms=500, max_backoff_ms=10000)


@dataclass
class StreamConfig:
    """Configuration for block streams and log queries.

    Attributes:
        tracked_depth: Number of recent blocks kept for reorg detection
        poll_interval: Seconds between head polls
        retry: Retry policy for transport calls
        call_timeout: Seconds allowed per transport call attempt
        max_walk_back: Parent fetches allowed while locating a fork point
            (None means tracked_depth + 1)
        log_concurrency: Concurrent sub-range fetches after a range split
        use_push: Consume pushed heads when the transport supports it
    """

    tracked_depth: int = DEFAULT_TRACKED_DEPTH
    poll_interval: float = 4.0
    retry: RetryConfig = field(default_factory=default_retry_config)
    call_timeout: float = 10.0
    max_walk_back: Optional[int] = None
    log_concurrency: int = 4
    use_push: bool = False

    def __post_init__(self):
        if self.tracked_depth < 1:
            raise ValueError(f'tracked_depth must be >= 1, got {self.tracked_depth}')
        if self.poll_interval <= 0:
            raise ValueError(f'poll_interval must be > 0, got {self.poll_interval}')
        if self.call_timeout <= 0:
            raise ValueError(f'call_timeout must be > 0, got {self.call_timeout}')
        if self.log_concurrency < 1:
            raise ValueError(f'log_concurrency must be >= 1, got {self.log_concurrency}')
        if self.max_walk_back is None:
            self.max_walk_back = self.tracked_depth + 1
        elif self.max_walk_back < 1:
            raise ValueError(f'max_walk_back must be >= 1, got {self.max_walk_back}')

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'StreamConfig':
        """Create StreamConfig from a dictionary; 'retry' may be a nested dictionary"""
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f'Unknown stream config keys: {sorted(unknown)}')

        values = dict(data)
        retry = values.get('retry')
        if isinstance(retry, Mapping):
            values['retry'] = RetryConfig(**retry)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX) -> 'StreamConfig':
        """Create StreamConfig from environment variables.

        Recognized variables (all optional):
            CHAINSTREAM_TRACKED_DEPTH, CHAINSTREAM_POLL_INTERVAL, CHAINSTREAM_CALL_TIMEOUT,
            CHAINSTREAM_MAX_WALK_BACK, CHAINSTREAM_LOG_CONCURRENCY, CHAINSTREAM_USE_PUSH,
            CHAINSTREAM_MAX_RETRIES, CHAINSTREAM_INITIAL_BACKOFF_MS, CHAINSTREAM_MAX_BACKOFF_MS
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(f'{prefix}{name}')
            return value.strip() if value is not None and value.strip() else None

        values: Dict[str, Any] = {}
        for name, convert in (
            ('tracked_depth', int),
            ('poll_interval', float),
            ('call_timeout', float),
            ('max_walk_back', int),
            ('log_concurrency', int),
            ('use_push', _parse_bool),
        ):
            raw = get(name.upper())
            if raw is not None:
                values[name] = _convert(f'{prefix}{name.upper()}', raw, convert)

        retry = default_retry_config()
        for name in ('max_retries', 'initial_backoff_ms', 'max_backoff_ms'):
            raw = get(name.upper())
            if raw is not None:
                setattr(retry, name, _convert(f'{prefix}{name.upper()}', raw, int))
        values['retry'] = RetryConfig(**asdict(retry))

        if len(values) > 1:
            logger.debug(f'Loaded stream config overrides from environment: {sorted(values)}')
        return cls(**values)


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f'Expected a boolean, got {value!r}')


def _convert(name: str, raw: str, convert):
    try:
        return convert(raw)
    except ValueError as e:
        raise ValueError(f'Invalid value for {name}: {raw!r} ({e})') from e
