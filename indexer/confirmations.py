import asyncio
import logging
from contextlib import suppress

from indexer.connection import ConnectionManager
from indexer.store import IndexStore


class ConfirmationTracker:
    """
    Periodic finality sweep over stored events.

    Every ``interval`` seconds, events at or below
    ``current height - confirmations`` are flagged as confirmed. There is
    no reorg awareness: a confirmed event stays confirmed.

    Parameters
    ----------
    connection : ConnectionManager
        Ledger access used to read the current height
    store : IndexStore
        Index store
    logger : logging.Logger
        Logger instance
    confirmations : int
        Confirmation depth in blocks
    interval : float
        Seconds between two sweeps
    """

    def __init__(
        self,
        connection: ConnectionManager,
        store: IndexStore,
        logger: logging.Logger,
        confirmations: int = 12,
        interval: float = 30.0
    ):
        self.connection = connection
        self.store = store
        self.logger = logger
        self.confirmations = confirmations
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def sweep(self) -> int:
        """
        Run one confirmation pass.

        Returns
        -------
        int
            Number of events newly confirmed
        """
        current_block = await self.connection.get_block_number()
        boundary = current_block - self.confirmations
        if boundary <= 0:
            return 0

        confirmed = await self.store.mark_events_as_confirmed(boundary)
        if confirmed:
            self.logger.info(f"Confirmed {confirmed} events up to block {boundary}")
        return confirmed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error(f"Error in confirmation process: {e}")
