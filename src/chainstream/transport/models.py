"""Wire models for JSON-RPC block and log payloads.

Payloads are validated here, at the transport boundary, before they are
converted to the streaming engine's immutable types.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..streaming.types import BlockSummary, LogEntry


def parse_quantity(value) -> int:
    """Parse a JSON-RPC quantity (0x-prefixed hex string or int)."""
    if isinstance(value, bool):
        raise ValueError(f'Invalid quantity: {value!r}')
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith('0x'):
            return int(text, 16) if len(text) > 2 else 0
        if text.isdigit():
            return int(text)
    raise ValueError(f'Invalid quantity: {value!r}')


def parse_hash32(value) -> str:
    """Validate a 32-byte hex identifier and normalize it to lowercase."""
    if not isinstance(value, str):
        raise ValueError(f'Invalid hash: {value!r}')
    text = value.strip().lower()
    if not text.startswith('0x'):
        text = f'0x{text}'
    if len(text) != 66:
        raise ValueError(f'Hash must be 32 bytes, got {len(text) - 2} hex chars')
    try:
        int(text[2:], 16)
    except ValueError:
        raise ValueError(f'Invalid hex in hash: {value!r}')
    return text


class RpcBlock(BaseModel):
    """Subset of an eth_getBlockBy* result needed for chain tracking."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    number: int = Field(..., description='Block height')
    hash: str = Field(..., description='Block hash')
    parent_hash: str = Field(..., alias='parentHash', description='Parent block hash')
    timestamp: int = Field(0, description='Block timestamp (seconds)')

    @field_validator('number', 'timestamp', mode='before')
    @classmethod
    def _quantity(cls, v):
        return parse_quantity(v)

    @field_validator('hash', 'parent_hash', mode='before')
    @classmethod
    def _hash(cls, v):
        return parse_hash32(v)

    def to_summary(self) -> BlockSummary:
        return BlockSummary(number=self.number, hash=self.hash, parent_hash=self.parent_hash, timestamp=self.timestamp)


class RpcLog(BaseModel):
    """An eth_getLogs result entry."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    address: str
    topics: List[str] = Field(default_factory=list)
    data: str = '0x'
    block_number: int = Field(..., alias='blockNumber')
    log_index: int = Field(..., alias='logIndex')
    block_hash: Optional[str] = Field(None, alias='blockHash')
    transaction_hash: Optional[str] = Field(None, alias='transactionHash')
    transaction_index: Optional[int] = Field(None, alias='transactionIndex')
    removed: bool = False

    @field_validator('block_number', 'log_index', mode='before')
    @classmethod
    def _quantity(cls, v):
        return parse_quantity(v)

    @field_validator('transaction_index', mode='before')
    @classmethod
    def _optional_quantity(cls, v):
        return None if v is None else parse_quantity(v)

    @field_validator('block_hash', 'transaction_hash', mode='before')
    @classmethod
    def _optional_hash(cls, v):
        return None if v is None else parse_hash32(v)

    @field_validator('address', 'data', mode='before')
    @classmethod
    def _lower_hex(cls, v):
        if not isinstance(v, str):
            raise ValueError(f'Expected hex string, got {v!r}')
        return v.lower()

    @field_validator('topics', mode='before')
    @classmethod
    def _topics(cls, v):
        return [parse_hash32(t) for t in (v or [])]

    def to_entry(self) -> LogEntry:
        return LogEntry(
            address=self.address,
            topics=tuple(self.topics),
            data=self.data,
            block_number=self.block_number,
            log_index=self.log_index,
            block_hash=self.block_hash,
            transaction_hash=self.transaction_hash,
            transaction_index=self.transaction_index,
            removed=self.removed,
        )
