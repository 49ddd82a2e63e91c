from indexer.connection import ConnectionManager
from indexer.entities import ContractDescriptor
from indexer.orchestrator import SyncOrchestrator
from indexer.schemas import ContractSyncStatus, HealthResponse, SyncStatusResponse
from indexer.store import IndexStore


class GetHealthStatusUseCase:
    """
    Use case for reporting the indexer health.

    Parameters
    ----------
    orchestrator : SyncOrchestrator
        Sync orchestrator
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator

    async def __call__(self) -> HealthResponse:
        return HealthResponse(data=await self.orchestrator.get_health_status())


class GetSyncStatusUseCase:
    """
    Use case for reporting how far each contract is behind the ledger.

    Parameters
    ----------
    connection : ConnectionManager
        Ledger access
    store : IndexStore
        Index store
    descriptors : list[ContractDescriptor]
        Configured contracts
    """

    def __init__(
        self,
        connection: ConnectionManager,
        store: IndexStore,
        descriptors: list[ContractDescriptor]
    ):
        self.connection = connection
        self.store = store
        self.descriptors = descriptors

    async def __call__(self) -> SyncStatusResponse:
        """
        Execute use case.

        Returns
        -------
        SyncStatusResponse
            Sync status of every configured contract
        """
        current_block = await self.connection.get_block_number()
        states = {state.contract_address: state for state in await self.store.get_all_sync_states()}

        contracts = []
        for descriptor in self.descriptors:
            state = states.get(descriptor.address)
            last_processed = state.last_processed_block if state else 0
            contracts.append(ContractSyncStatus(
                contract_address=descriptor.address,
                contract_name=descriptor.name,
                last_processed_block=last_processed,
                current_block=current_block,
                blocks_behind=max(current_block - last_processed, 0),
                is_active=state.is_active if state else False,
                last_updated=state.last_updated if state else None,
                event_count=await self.store.count_events(descriptor.address)
            ))

        return SyncStatusResponse(current_block=current_block, contracts=contracts)
