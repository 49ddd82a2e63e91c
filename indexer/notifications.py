import asyncio
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel


class NotificationType(str, Enum):
    EVENT = "event"
    EVENTS_BATCH = "events_batch"
    TRANSACTION = "transaction"
    TRANSACTIONS_BATCH = "transactions_batch"
    SYNC_PROGRESS = "sync_progress"
    ERROR = "error"
    SYNCED = "synced"


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, (list, tuple)):
        return [_dump(item) for item in data]
    return data


class Notification(BaseModel):
    """
    Typed message published by the sync orchestrator.

    Attributes
    ----------
    type : NotificationType
        Notification kind
    data : Any
        Record, list of records or plain payload
    """
    type: NotificationType
    data: Any = None

    def to_message(self) -> dict[str, Any]:
        """Wire form ``{type, data}`` with camelCase records."""
        return {"type": self.type.value, "data": _dump(self.data)}


class NotificationBus:
    """
    Fan-out of notifications to independent consumers.

    Each subscriber owns an unbounded queue; publishing never blocks and
    never fails because of a slow consumer.
    """

    def __init__(self):
        self._queues: list[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, notification: Notification) -> None:
        for queue in list(self._queues):
            queue.put_nowait(notification)


async def log_notifications(bus: NotificationBus, logger: logging.Logger) -> None:
    """
    Log progress, new events and errors published on the bus.

    Parameters
    ----------
    bus : NotificationBus
        Notification bus
    logger : logging.Logger
        Logger instance
    """
    queue = bus.subscribe()
    try:
        while True:
            notification = await queue.get()
            data = notification.data

            if notification.type is NotificationType.EVENT:
                logger.info(
                    f"New event: {data.contract_name}.{data.event_name} at block {data.block_number}"
                )
            elif notification.type is NotificationType.SYNC_PROGRESS:
                logger.info(f"Sync progress: {data.contract} - {data.progress:.2f}%")
            elif notification.type is NotificationType.SYNCED:
                logger.info("Initial sync completed")
            elif notification.type is NotificationType.ERROR:
                logger.error(f"Indexer error: {data.get('message') if isinstance(data, dict) else data}")
    finally:
        bus.unsubscribe(queue)
