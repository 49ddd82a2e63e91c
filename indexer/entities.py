from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from web3 import Web3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordEntity(BaseModel):
    """
    Base for records that are stored and sent over the wire.

    Python attributes are snake_case, the serialized form is camelCase.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


class ContractDescriptor(BaseModel):
    """
    Entity describing one contract to index.

    Attributes
    ----------
    address : str
        Contract address, checksummed on load
    name : str
        Display name
    abi : list[dict[str, Any]]
        Contract ABI (only the event entries are used)
    abi_path : str | None
        JSON file to read the ABI from when ``abi`` is empty
    start_block : int
        First block to index when no sync state exists
    events : tuple[str, ...]
        Tracked event names, empty means every declared event
    """
    address: str
    name: str
    abi: list[dict[str, Any]] = Field(default_factory=list)
    abi_path: str | None = None
    start_block: int = Field(default=0, ge=0)
    events: tuple[str, ...] = ()

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True
    )

    @field_validator('address')
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not Web3.is_address(v):
            raise ValueError(f'Invalid contract address: {v}')
        return Web3.to_checksum_address(v)


class IndexedEvent(RecordEntity):
    """
    Entity representing a stored contract event.

    Attributes
    ----------
    contract_address : str
        Emitting contract address
    contract_name : str
        Emitting contract display name
    event_name : str
        Event name or ``UnknownEvent``
    block_number : int
        Block containing the event
    transaction_hash : str
        Hash of the emitting transaction
    transaction_index : int
        Position of the transaction in its block
    log_index : int
        Position of the log in its block
    args : dict[str, Any]
        Normalized event arguments, in declaration order
    timestamp : datetime
        Block timestamp
    confirmed : bool
        True once the block is deeper than the confirmation depth
    created_at : datetime
        Indexing time
    """
    contract_address: str
    contract_name: str
    event_name: str
    block_number: int
    transaction_hash: str
    transaction_index: int
    log_index: int
    args: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    confirmed: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        """Natural key ``transactionHash:logIndex``."""
        return f"{self.transaction_hash}:{self.log_index}"


class IndexedTransaction(RecordEntity):
    """
    Entity representing a stored transaction.

    Wide integer fields (value and gas figures) are decimal strings.
    """
    hash: str
    block_number: int
    block_hash: str
    transaction_index: int
    from_address: str = Field(alias="from")
    to_address: str = Field(default="", alias="to")
    value: str
    gas_price: str
    gas_limit: str
    gas_used: str
    nonce: int
    data: str
    timestamp: datetime
    status: int | None = None
    contract_address: str | None = None
    logs: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class SyncState(RecordEntity):
    """
    Entity holding the resume point of one contract.

    Attributes
    ----------
    contract_address : str
        Contract address
    contract_name : str
        Contract display name
    last_processed_block : int
        Highest block fully indexed, never decreases
    is_active : bool
        False once the indexer stopped
    last_updated : datetime
        Time of the last update
    """
    contract_address: str
    contract_name: str
    last_processed_block: int
    is_active: bool = True
    last_updated: datetime = Field(default_factory=utcnow)


class SyncProgress(RecordEntity):
    """Progress of one historical catch-up window."""
    contract: str
    from_block: int
    to_block: int
    progress: float


class HealthStatus(RecordEntity):
    """Snapshot of the indexer health."""
    healthy: bool
    state: str
    current_block: int | None = None
    sync_states: list[SyncState] = Field(default_factory=list)
    contracts_count: int = 0
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
