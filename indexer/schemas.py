from datetime import datetime

from pydantic import BaseModel, ConfigDict

from indexer.entities import HealthStatus


class HealthResponse(BaseModel):
    """
    Response schema for the indexer health check.

    Attributes
    ----------
    success : bool
        Always true when the endpoint answers
    data : HealthStatus
        Health snapshot
    """
    success: bool = True
    data: HealthStatus

    model_config = ConfigDict(from_attributes=True)


class ContractSyncStatus(BaseModel):
    """
    Sync status of one configured contract.

    Attributes
    ----------
    contract_address : str
        Contract address
    contract_name : str
        Contract display name
    last_processed_block : int
        Resume point (0 when never synced)
    current_block : int
        Ledger height
    blocks_behind : int
        Distance between the ledger height and the resume point
    is_active : bool
        Whether the indexer is running for this contract
    last_updated : datetime | None
        Last sync state update
    event_count : int
        Number of stored events of the contract
    """
    contract_address: str
    contract_name: str
    last_processed_block: int
    current_block: int
    blocks_behind: int
    is_active: bool
    last_updated: datetime | None = None
    event_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class SyncStatusResponse(BaseModel):
    """
    Response schema for the sync status query.

    Attributes
    ----------
    current_block : int
        Ledger height
    contracts : list[ContractSyncStatus]
        One entry per configured contract
    """
    current_block: int
    contracts: list[ContractSyncStatus]

    model_config = ConfigDict(from_attributes=True)


class ClientsResponse(BaseModel):
    """Number of connected WebSocket clients."""
    connected_clients: int
