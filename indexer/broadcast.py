import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from indexer.notifications import NotificationBus, NotificationType

CHANNELS = ("events", "transactions", "sync", "all")

CHANNEL_BY_NOTIFICATION = {
    NotificationType.EVENT: "events",
    NotificationType.EVENTS_BATCH: "events",
    NotificationType.TRANSACTION: "transactions",
    NotificationType.TRANSACTIONS_BATCH: "transactions",
    NotificationType.SYNC_PROGRESS: "sync",
    NotificationType.ERROR: "sync",
}


class ClientSocket(Protocol):
    async def send_text(self, data: str) -> None: ...


@dataclass
class Client:
    id: str
    socket: ClientSocket
    subscriptions: set[str] = field(default_factory=set)
    connected: bool = True


class BroadcastServer:
    """
    Registry of live subscribers and fan-out of indexer notifications.

    Delivery is at-most-once and there is no replay: a client only gets
    what is broadcast while it is connected and subscribed.

    Parameters
    ----------
    bus : NotificationBus
        Source of notifications to fan out
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, bus: NotificationBus, logger: logging.Logger):
        self.bus = bus
        self.logger = logger
        self.clients: dict[str, Client] = {}

    @property
    def connected_clients_count(self) -> int:
        return len(self.clients)

    def get_client_subscriptions(self, client_id: str) -> list[str]:
        client = self.clients.get(client_id)
        return sorted(client.subscriptions) if client else []

    async def connect(self, socket: ClientSocket) -> Client:
        """
        Register a freshly accepted socket.

        Parameters
        ----------
        socket : ClientSocket
            Accepted WebSocket

        Returns
        -------
        Client
            Registered client with no subscriptions
        """
        client = Client(id=uuid.uuid4().hex, socket=socket)
        self.clients[client.id] = client
        self.logger.info(f"WebSocket client connected: {client.id}")

        await self.send_message(client.id, {
            "type": "connected",
            "clientId": client.id,
            "message": "Connected to blockchain indexer WebSocket"
        })
        return client

    def disconnect(self, client_id: str) -> None:
        client = self.clients.pop(client_id, None)
        if client is not None:
            client.connected = False
            self.logger.info(f"WebSocket client disconnected: {client_id}")

    async def handle_message(self, client_id: str, raw: str | bytes) -> None:
        """
        Handle one inbound frame.

        Parameters
        ----------
        client_id : str
            Sending client
        raw : str | bytes
            JSON frame, text or binary
        """
        if client_id not in self.clients:
            return

        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            await self.send_message(client_id, {"type": "error", "message": "Invalid JSON message"})
            return

        if not isinstance(message, dict):
            await self.send_message(client_id, {"type": "error", "message": "Invalid message format"})
            return

        message_type = message.get("type")
        if message_type == "subscribe":
            await self._subscribe(client_id, message.get("channels"))
        elif message_type == "unsubscribe":
            await self._unsubscribe(client_id, message.get("channels"))
        elif message_type == "ping":
            await self.send_message(client_id, {"type": "pong"})
        else:
            await self.send_message(client_id, {"type": "error", "message": "Unknown message type"})

    @staticmethod
    def _requested_channels(channels: Any) -> list[str]:
        if not isinstance(channels, list):
            return []
        return [channel for channel in channels if isinstance(channel, str)]

    async def _subscribe(self, client_id: str, channels: Any) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return

        applied = []
        for channel in self._requested_channels(channels):
            if channel in CHANNELS:
                client.subscriptions.add(channel)
                applied.append(channel)

        await self.send_message(client_id, {"type": "subscribed", "channels": applied})

    async def _unsubscribe(self, client_id: str, channels: Any) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return

        removed = []
        for channel in self._requested_channels(channels):
            if channel in client.subscriptions:
                client.subscriptions.discard(channel)
                removed.append(channel)

        await self.send_message(client_id, {"type": "unsubscribed", "channels": removed})

    async def broadcast(self, message: dict[str, Any], channel: str = "all") -> int:
        """
        Deliver a message to every client subscribed to ``channel`` or ``all``.

        Parameters
        ----------
        message : dict[str, Any]
            JSON-serializable message
        channel : str
            Channel the message belongs to

        Returns
        -------
        int
            Number of clients the message was delivered to
        """
        delivered = 0
        for client_id, client in list(self.clients.items()):
            if not client.connected:
                continue
            if channel in client.subscriptions or "all" in client.subscriptions:
                if await self.send_message(client_id, message):
                    delivered += 1
        return delivered

    async def send_message(self, client_id: str, message: dict[str, Any]) -> bool:
        """Send to one client; a failed send drops the client."""
        client = self.clients.get(client_id)
        if client is None or not client.connected:
            return False

        try:
            await client.socket.send_text(json.dumps(message))
        except Exception as e:
            self.logger.error(f"Error sending message to client {client_id}: {e}")
            self.disconnect(client_id)
            return False
        return True

    async def run(self) -> None:
        """Consume the notification bus and broadcast each notification."""
        queue = self.bus.subscribe()
        try:
            while True:
                notification = await queue.get()
                channel = CHANNEL_BY_NOTIFICATION.get(notification.type)
                if channel is None:
                    continue
                await self.broadcast(notification.to_message(), channel)
        finally:
            self.bus.unsubscribe(queue)
