from dishka import Provider, Scope, provide, FromComponent
from typing import Annotated
from redis.asyncio import Redis
from web3 import AsyncWeb3
from core.environment.config import Settings
from core.redis.providers import CacheService
from indexer.abi_service import ABIService
from indexer.broadcast import BroadcastServer
from indexer.confirmations import ConfirmationTracker
from indexer.connection import ConnectionManager
from indexer.contracts import load_contracts
from indexer.entities import ContractDescriptor
from indexer.normalizer import Normalizer
from indexer.notifications import NotificationBus
from indexer.orchestrator import SyncOrchestrator
from indexer.retry import RetryPolicy
from indexer.store import IndexStore
from indexer.usecases import GetHealthStatusUseCase, GetSyncStatusUseCase
import logging


class IndexerProvider(Provider):
    """
    Provider for the indexing pipeline.

    Every service is an APP-scoped object owned by the container and
    injected into its dependents.
    """

    component = "indexer"

    @provide(scope=Scope.APP)
    def get_web3_client(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> AsyncWeb3:
        """
        Provide the HTTP web3 client of the ledger node.

        Parameters
        ----------
        settings : Settings
            Application settings

        Returns
        -------
        AsyncWeb3
            Web3 client
        """
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))

    @provide(scope=Scope.APP)
    def get_contracts(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> list[ContractDescriptor]:
        """
        Provide the configured contract descriptors.

        Parameters
        ----------
        settings : Settings
            Application settings

        Returns
        -------
        list[ContractDescriptor]
            Contracts to index
        """
        return load_contracts(settings.contracts_file)

    @provide(scope=Scope.APP)
    def get_connection_manager(
        self,
        web3_client: Annotated[AsyncWeb3, FromComponent("indexer")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> ConnectionManager:
        """
        Provide the ledger connection manager.

        Parameters
        ----------
        web3_client : AsyncWeb3
            HTTP web3 client
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        ConnectionManager
            Connection manager with the configured reconnection policy
        """
        return ConnectionManager(
            web3=web3_client,
            logger=logger,
            ws_url=settings.ws_url,
            reconnect_policy=RetryPolicy(
                base_delay=settings.reconnect_delay,
                max_delay=settings.reconnect_max_delay,
                max_attempts=settings.reconnect_max_attempts
            ),
            poll_interval=settings.poll_interval
        )

    @provide(scope=Scope.APP)
    def get_index_store(
        self,
        redis_client: Annotated[Redis, FromComponent("redis")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> IndexStore:
        """
        Provide the Redis index store.
        """
        return IndexStore(redis_client, logger=logger, prefix=settings.store_prefix)

    @provide(scope=Scope.APP)
    def get_normalizer(
        self,
        connection: Annotated[ConnectionManager, FromComponent("indexer")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> Normalizer:
        return Normalizer(connection=connection, logger=logger)

    @provide(scope=Scope.APP)
    def get_notification_bus(self) -> NotificationBus:
        return NotificationBus()

    @provide(scope=Scope.APP)
    def get_broadcast_server(
        self,
        bus: Annotated[NotificationBus, FromComponent("indexer")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> BroadcastServer:
        return BroadcastServer(bus=bus, logger=logger)

    @provide(scope=Scope.APP)
    def get_abi_service(
        self,
        cache_service: Annotated[CacheService, FromComponent("cache")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> ABIService:
        """
        Provide ABI service.

        Parameters
        ----------
        cache_service : CacheService
            Cache service instance
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        ABIService
            ABI service instance
        """
        return ABIService(
            cache_service=cache_service,
            logger=logger,
            api_url=settings.explorer_api_url,
            api_key=settings.explorer_api_key
        )

    @provide(scope=Scope.APP)
    def get_confirmation_tracker(
        self,
        connection: Annotated[ConnectionManager, FromComponent("indexer")],
        store: Annotated[IndexStore, FromComponent("indexer")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> ConfirmationTracker:
        return ConfirmationTracker(
            connection=connection,
            store=store,
            logger=logger,
            confirmations=settings.confirmations,
            interval=settings.confirmation_interval
        )

    @provide(scope=Scope.APP)
    def get_sync_orchestrator(
        self,
        connection: Annotated[ConnectionManager, FromComponent("indexer")],
        store: Annotated[IndexStore, FromComponent("indexer")],
        normalizer: Annotated[Normalizer, FromComponent("indexer")],
        bus: Annotated[NotificationBus, FromComponent("indexer")],
        abi_service: Annotated[ABIService, FromComponent("indexer")],
        confirmation_tracker: Annotated[ConfirmationTracker, FromComponent("indexer")],
        descriptors: Annotated[list[ContractDescriptor], FromComponent("indexer")],
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> SyncOrchestrator:
        """
        Provide the sync orchestrator.

        Parameters
        ----------
        connection : ConnectionManager
            Ledger access
        store : IndexStore
            Index store
        normalizer : Normalizer
            Record conversion
        bus : NotificationBus
            Notification bus
        abi_service : ABIService
            ABI resolution
        confirmation_tracker : ConfirmationTracker
            Finality sweep
        descriptors : list[ContractDescriptor]
            Contracts to index
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        SyncOrchestrator
            Sync orchestrator instance
        """
        return SyncOrchestrator(
            connection=connection,
            store=store,
            normalizer=normalizer,
            bus=bus,
            abi_service=abi_service,
            confirmation_tracker=confirmation_tracker,
            descriptors=descriptors,
            logger=logger,
            batch_size=settings.batch_size,
            retry_policy=RetryPolicy(
                base_delay=settings.retry_delay,
                max_delay=settings.retry_max_delay,
                max_attempts=settings.retry_max_attempts
            )
        )

    @provide(scope=Scope.REQUEST)
    def get_health_status_use_case(
        self,
        orchestrator: Annotated[SyncOrchestrator, FromComponent("indexer")]
    ) -> GetHealthStatusUseCase:
        return GetHealthStatusUseCase(orchestrator=orchestrator)

    @provide(scope=Scope.REQUEST)
    def get_sync_status_use_case(
        self,
        connection: Annotated[ConnectionManager, FromComponent("indexer")],
        store: Annotated[IndexStore, FromComponent("indexer")],
        descriptors: Annotated[list[ContractDescriptor], FromComponent("indexer")]
    ) -> GetSyncStatusUseCase:
        """
        Provide get sync status use case.

        Parameters
        ----------
        connection : ConnectionManager
            Ledger access
        store : IndexStore
            Index store
        descriptors : list[ContractDescriptor]
            Configured contracts

        Returns
        -------
        GetSyncStatusUseCase
            Get sync status use case
        """
        return GetSyncStatusUseCase(
            connection=connection,
            store=store,
            descriptors=descriptors
        )
