import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from web3.datastructures import AttributeDict

from core.exceptions import RetryExhaustedError, TransactionFetchError
from indexer.abi_service import ABIService
from indexer.confirmations import ConfirmationTracker
from indexer.connection import ConnectionManager
from indexer.entities import (
    ContractDescriptor,
    HealthStatus,
    IndexedEvent,
    IndexedTransaction,
    SyncProgress,
)
from indexer.listener import ContractListener
from indexer.normalizer import Normalizer
from indexer.notifications import Notification, NotificationBus, NotificationType
from indexer.retry import RetryPolicy
from indexer.store import IndexStore

T = TypeVar("T")


class IndexerState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    CATCHING_UP = "catching_up"
    LIVE = "live"
    STOPPED = "stopped"


class SyncInterrupted(Exception):
    """Raised inside catch-up when the orchestrator is stopped."""


class SyncOrchestrator:
    """
    Drives historical catch-up and live indexing of a contract set.

    Catch-up runs contract by contract against a block height captured
    once at start (the horizon), in fixed-size windows. Each window is
    persisted together with the contract's sync state before the next one
    starts, so a restart resumes at the first uncommitted window. Once
    every contract is caught up, listeners switch to pushed live events
    and the confirmation tracker starts.

    Parameters
    ----------
    connection : ConnectionManager
        Ledger access
    store : IndexStore
        Index store, written only by this orchestrator
    normalizer : Normalizer
        Event and transaction conversion
    bus : NotificationBus
        Channel for published notifications
    abi_service : ABIService
        ABI resolution for the descriptors
    confirmation_tracker : ConfirmationTracker
        Finality sweep started once live
    descriptors : list[ContractDescriptor]
        Contracts to index
    logger : logging.Logger
        Logger instance
    batch_size : int
        Number of blocks per catch-up window
    retry_policy : RetryPolicy
        Backoff between retries of a failed window
    """

    def __init__(
        self,
        connection: ConnectionManager,
        store: IndexStore,
        normalizer: Normalizer,
        bus: NotificationBus,
        abi_service: ABIService,
        confirmation_tracker: ConfirmationTracker,
        descriptors: list[ContractDescriptor],
        logger: logging.Logger,
        batch_size: int = 1000,
        retry_policy: RetryPolicy | None = None
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        self.connection = connection
        self.store = store
        self.normalizer = normalizer
        self.bus = bus
        self.abi_service = abi_service
        self.confirmation_tracker = confirmation_tracker
        self.descriptors = descriptors
        self.logger = logger
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy()

        self.contract_listeners: dict[str, ContractListener] = {}
        self.state = IndexerState.IDLE
        self.is_running = False
        self._stop_event = asyncio.Event()
        self._live_tasks: set[asyncio.Task] = set()

    async def initialize(self) -> None:
        """
        Connect to the ledger and the store and build the listeners.

        Raises
        ------
        LedgerConnectionError
            If the ledger node cannot be reached
        StoreConnectionError
            If the store cannot be reached
        AbiNotFoundError
            If a contract ABI cannot be resolved
        """
        self.state = IndexerState.INITIALIZING
        await self.connection.connect()
        await self.store.connect()

        for descriptor in self.descriptors:
            resolved = await self.abi_service.resolve(descriptor)
            self.contract_listeners[resolved.address] = ContractListener(
                resolved, self.connection, self.logger
            )

        self.logger.info(f"Blockchain indexer initialized with {len(self.contract_listeners)} contracts")

    async def start(self) -> None:
        """
        Catch up every contract, then switch to live indexing.

        Raises
        ------
        RetryExhaustedError
            If a capped retry policy gives up on a window
        """
        self.is_running = True
        self._stop_event.clear()

        try:
            await self.perform_initial_sync()
        except SyncInterrupted:
            self.logger.info("Initial sync interrupted by stop")
            return
        except Exception as e:
            self.logger.error(f"Failed to start indexer: {e}")
            self._publish_error(e)
            raise

        if not self.is_running:
            return

        await self.start_realtime_listening()
        self.confirmation_tracker.start()
        self.state = IndexerState.LIVE
        self.logger.info("Blockchain indexer started")

    async def stop(self) -> None:
        """
        Stop indexing and release every connection.

        Wakes any catch-up retry wait so an in-flight sync ends promptly.
        """
        self.is_running = False
        self._stop_event.set()

        await self.confirmation_tracker.stop()

        for listener in self.contract_listeners.values():
            await listener.stop_listening()

        live_tasks = list(self._live_tasks)
        for task in live_tasks:
            task.cancel()
        await asyncio.gather(*live_tasks, return_exceptions=True)

        await self.connection.disconnect()

        try:
            await self.store.set_sync_states_inactive()
        except Exception as e:
            self.logger.warning(f"Failed to deactivate sync states: {e}")
        await self.store.disconnect()

        self.state = IndexerState.STOPPED
        self.logger.info("Blockchain indexer stopped")

    async def perform_initial_sync(self) -> None:
        """Catch up every contract, one after the other, to a single horizon."""
        self.state = IndexerState.CATCHING_UP
        self.logger.info("Starting initial sync...")

        horizon = await self._with_retry("reading current block", self.connection.get_block_number)

        for listener in self.contract_listeners.values():
            if not self.is_running:
                raise SyncInterrupted()
            await self.sync_contract_history(listener, horizon)

        self.bus.publish(Notification(type=NotificationType.SYNCED, data={"horizon": horizon}))
        self.logger.info(f"Initial sync completed at block {horizon}")

    async def sync_contract_history(self, listener: ContractListener, horizon: int) -> None:
        """
        Index one contract from its resume point to the horizon.

        Parameters
        ----------
        listener : ContractListener
            Listener of the contract
        horizon : int
            Block height captured at start
        """
        name = listener.name
        sync_state = await self._with_retry(
            f"reading sync state of {name}",
            lambda: self.store.get_sync_state(listener.address)
        )

        if sync_state is not None:
            start_block = max(sync_state.last_processed_block + 1, 0)
        else:
            start_block = listener.descriptor.start_block

        if start_block > horizon:
            self.logger.info(f"Contract {name} is already up to date")
            return

        self.logger.info(f"Syncing contract {name} from block {start_block} to {horizon}")

        from_block = start_block
        while from_block <= horizon:
            to_block = min(from_block + self.batch_size - 1, horizon)

            events, transactions = await self._with_retry(
                f"syncing contract {name} blocks {from_block}-{to_block}",
                lambda: self.process_historical_window(listener, from_block, to_block)
            )

            if events:
                self.bus.publish(Notification(type=NotificationType.EVENTS_BATCH, data=events))
            if transactions:
                self.bus.publish(Notification(type=NotificationType.TRANSACTIONS_BATCH, data=transactions))
            self.bus.publish(Notification(
                type=NotificationType.SYNC_PROGRESS,
                data=SyncProgress(
                    contract=name,
                    from_block=from_block,
                    to_block=to_block,
                    progress=self._progress(start_block, to_block, horizon)
                )
            ))

            from_block = to_block + 1

    async def process_historical_window(
        self,
        listener: ContractListener,
        from_block: int,
        to_block: int
    ) -> tuple[list[IndexedEvent], list[IndexedTransaction]]:
        """
        Fetch, normalize and persist one window, then commit its sync state.

        Parameters
        ----------
        listener : ContractListener
            Listener of the contract
        from_block : int
            First block of the window
        to_block : int
            Last block of the window

        Returns
        -------
        tuple[list[IndexedEvent], list[IndexedTransaction]]
            Persisted events and transactions
        """
        raw_events = await listener.get_historical_events(from_block, to_block)

        events = []
        for raw_event in raw_events:
            events.append(await self.normalizer.to_indexed_event(raw_event, listener.descriptor))

        transaction_hashes = dict.fromkeys(event.transaction_hash for event in events)
        transactions = []
        for tx_hash in transaction_hashes:
            transaction = await self._fetch_transaction(tx_hash)
            if transaction is not None:
                transactions.append(transaction)

        await asyncio.gather(
            self.store.save_events(events),
            self.store.save_transactions(transactions)
        )
        await self.store.update_sync_state(listener.address, listener.name, to_block)

        return events, transactions

    async def start_realtime_listening(self) -> None:
        for listener in self.contract_listeners.values():
            await listener.start_listening(self._on_realtime_event)
        self.logger.info("Started real-time listening")

    def _on_realtime_event(self, event: AttributeDict, listener: ContractListener) -> None:
        if not self.is_running:
            return
        task = asyncio.create_task(self.process_realtime_event(event, listener))
        self._live_tasks.add(task)
        task.add_done_callback(self._live_tasks.discard)

    async def process_realtime_event(self, event: AttributeDict, listener: ContractListener) -> None:
        """
        Persist and publish one pushed event.

        Failures are logged and published as ``error`` notifications.

        Parameters
        ----------
        event : AttributeDict
            Decoded event
        listener : ContractListener
            Listener that received it
        """
        try:
            indexed_event = await self.normalizer.to_indexed_event(event, listener.descriptor)
            transaction = await self._fetch_transaction(indexed_event.transaction_hash)

            await self.store.save_events([indexed_event])
            if transaction is not None:
                await self.store.save_transactions([transaction])

            await self.store.update_sync_state(
                listener.address,
                listener.name,
                indexed_event.block_number
            )

            self.bus.publish(Notification(type=NotificationType.EVENT, data=indexed_event))
            if transaction is not None:
                self.bus.publish(Notification(type=NotificationType.TRANSACTION, data=transaction))

        except Exception as e:
            self.logger.error(f"Error processing real-time event for {listener.name}: {e}")
            self._publish_error(e, contract=listener.name)

    async def get_health_status(self) -> HealthStatus:
        """
        Health snapshot: running flag, ledger height and sync states.

        Returns
        -------
        HealthStatus
            Unhealthy with the error message when ledger or store fail
        """
        try:
            current_block = await self.connection.get_block_number()
            sync_states = await self.store.get_all_sync_states()
        except Exception as e:
            return HealthStatus(healthy=False, state=self.state.value, error=str(e))

        return HealthStatus(
            healthy=self.is_running,
            state=self.state.value,
            current_block=current_block,
            sync_states=sync_states,
            contracts_count=len(self.contract_listeners)
        )

    async def _fetch_transaction(self, tx_hash: str) -> IndexedTransaction | None:
        try:
            transaction = await self.normalizer.to_indexed_transaction(tx_hash)
        except TransactionFetchError as e:
            self.logger.error(f"Error processing transaction {tx_hash}: {e}")
            return None
        if transaction is None:
            self.logger.warning(f"Transaction {tx_hash} or its receipt is not available, skipping")
        return transaction

    async def _with_retry(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            if not self.is_running:
                raise SyncInterrupted()
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                self.logger.error(f"Error {description} (attempt {attempt}): {e}")
                self._publish_error(e, operation=description)
                if self.retry_policy.exhausted(attempt):
                    raise RetryExhaustedError(
                        f"Gave up {description} after {attempt} attempts: {e}"
                    ) from e
                if await self._wait(self.retry_policy.delay_for(attempt)):
                    raise SyncInterrupted()

    async def _wait(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _publish_error(self, error: Exception, **context: Any) -> None:
        self.bus.publish(Notification(
            type=NotificationType.ERROR,
            data={"message": str(error), **context}
        ))

    @staticmethod
    def _progress(start_block: int, to_block: int, horizon: int) -> float:
        if horizon <= start_block:
            return 100.0
        return (to_block - start_block) / (horizon - start_block) * 100
