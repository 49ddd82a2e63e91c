import asyncio
import json
import logging
from typing import Any, Callable

import websockets
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.datastructures import AttributeDict
from web3.exceptions import TransactionNotFound

from core.exceptions import LedgerConnectionError
from indexer.retry import RetryPolicy

LogHandler = Callable[[AttributeDict], None]


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def format_log(raw: dict[str, Any]) -> AttributeDict:
    """
    Convert a JSON-RPC log (hex strings) into the shape web3 returns.

    Parameters
    ----------
    raw : dict[str, Any]
        Log as received from an ``eth_subscription`` notification

    Returns
    -------
    AttributeDict
        Log with int positions and byte topics, ready for ``process_log``
    """
    return AttributeDict({
        'address': Web3.to_checksum_address(raw['address']),
        'topics': [HexBytes(topic) for topic in raw.get('topics', [])],
        'data': HexBytes(raw.get('data') or '0x'),
        'blockNumber': _to_int(raw['blockNumber']),
        'blockHash': HexBytes(raw['blockHash']),
        'transactionHash': HexBytes(raw['transactionHash']),
        'transactionIndex': _to_int(raw['transactionIndex']),
        'logIndex': _to_int(raw['logIndex']),
        'removed': bool(raw.get('removed', False)),
    })


class LogSubscription:
    """
    Handle of one log subscription.

    Parameters
    ----------
    manager : ConnectionManager
        Owning connection manager
    filter_params : dict[str, Any]
        ``address`` / ``topics`` filter
    handler : LogHandler
        Called with every pushed log
    """

    def __init__(
        self,
        manager: "ConnectionManager",
        filter_params: dict[str, Any],
        handler: LogHandler
    ):
        self.manager = manager
        self.filter_params = filter_params
        self.handler = handler
        self.subscription_id: str | None = None
        self.poller: asyncio.Task | None = None
        self.active = True

    async def cancel(self) -> None:
        """Detach the subscription. Only the first call has an effect."""
        if not self.active:
            return
        self.active = False
        await self.manager._unsubscribe(self)


class ConnectionManager:
    """
    Access to the ledger node.

    Request/response calls go through ``AsyncWeb3`` over HTTP. Live logs
    come from a persistent WebSocket push channel (``eth_subscribe``) when
    ``ws_url`` is set, otherwise from a polling loop.

    Parameters
    ----------
    web3 : AsyncWeb3
        HTTP web3 client
    logger : logging.Logger
        Logger instance
    ws_url : str | None
        WebSocket endpoint of the node
    reconnect_policy : RetryPolicy
        Delays between push channel reconnection attempts
    poll_interval : float
        Seconds between two polls when no push channel is configured
    request_timeout : float
        Seconds to wait for a reply on the push channel
    connect_ws : Callable
        Coroutine function opening the WebSocket (``websockets.connect``)
    """

    def __init__(
        self,
        web3: AsyncWeb3,
        logger: logging.Logger,
        ws_url: str | None = None,
        reconnect_policy: RetryPolicy | None = None,
        poll_interval: float = 2.0,
        request_timeout: float = 10.0,
        connect_ws: Callable[..., Any] = websockets.connect
    ):
        self.web3 = web3
        self.logger = logger
        self.ws_url = ws_url
        self.reconnect_policy = reconnect_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._connect_ws = connect_ws

        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._closed = False
        self._request_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._subscriptions: list[LogSubscription] = []
        self._subscriptions_by_id: dict[str, LogSubscription] = {}

    @property
    def push_connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        """
        Verify the node answers and open the push channel.

        Raises
        ------
        LedgerConnectionError
            If the HTTP endpoint cannot be reached
        """
        self._closed = False
        try:
            block_number = await self.web3.eth.block_number
        except Exception as e:
            raise LedgerConnectionError(f"Failed to connect to ledger node: {e}") from e

        self.logger.info(f"Ledger provider initialized at block {block_number}")

        if self.ws_url:
            try:
                await self._open_channel()
            except Exception as e:
                self.logger.error(f"WebSocket connection failed: {e}")
                self._schedule_reconnection()

    async def disconnect(self) -> None:
        """Cancel pending reconnection, stop pollers and close the push channel."""
        self._closed = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        for subscription in list(self._subscriptions):
            await subscription.cancel()

        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None

        self.logger.info("Ledger WebSocket disconnected")

    async def get_block_number(self) -> int:
        return await self.web3.eth.block_number

    async def get_block(self, block_number: int, full_transactions: bool = False) -> AttributeDict:
        return await self.web3.eth.get_block(block_number, full_transactions)

    async def get_transaction(self, tx_hash: str) -> AttributeDict | None:
        try:
            return await self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None

    async def get_transaction_receipt(self, tx_hash: str) -> AttributeDict | None:
        try:
            return await self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def get_logs(self, filter_params: dict[str, Any]) -> list[AttributeDict]:
        return await self.web3.eth.get_logs(filter_params)

    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract:
        return self.web3.eth.contract(address=address, abi=abi)

    async def subscribe_logs(
        self,
        filter_params: dict[str, Any],
        handler: LogHandler
    ) -> LogSubscription:
        """
        Subscribe to live logs matching a filter.

        Parameters
        ----------
        filter_params : dict[str, Any]
            ``address`` / ``topics`` filter
        handler : LogHandler
            Called with every matching log

        Returns
        -------
        LogSubscription
            Handle whose ``cancel`` detaches the handler
        """
        subscription = LogSubscription(self, filter_params, handler)
        self._subscriptions.append(subscription)

        if not self.ws_url:
            subscription.poller = asyncio.create_task(self._poll_logs(subscription))
        elif self._ws is not None:
            await self._send_subscribe(subscription)
        # otherwise the channel is down and the reconnect resubscribes it

        return subscription

    async def _unsubscribe(self, subscription: LogSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

        if subscription.poller is not None:
            subscription.poller.cancel()
            subscription.poller = None

        subscription_id = subscription.subscription_id
        subscription.subscription_id = None
        if subscription_id is None:
            return
        self._subscriptions_by_id.pop(subscription_id, None)

        if self._ws is not None:
            try:
                await self._request("eth_unsubscribe", [subscription_id])
            except Exception as e:
                self.logger.warning(f"Failed to unsubscribe {subscription_id}: {e}")

    async def _open_channel(self) -> None:
        ws = await self._connect_ws(self.ws_url)
        self._ws = ws
        self._subscriptions_by_id.clear()
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self.logger.info("WebSocket connection opened")

        for subscription in list(self._subscriptions):
            await self._send_subscribe(subscription)
        self._reconnect_attempts = 0

    async def _send_subscribe(self, subscription: LogSubscription) -> None:
        subscription_id = await self._request(
            "eth_subscribe", ["logs", subscription.filter_params]
        )
        subscription.subscription_id = subscription_id
        self._subscriptions_by_id[subscription_id] = subscription
        self.logger.debug(f"Subscribed to logs {subscription.filter_params} as {subscription_id}")

    async def _request(self, method: str, params: list[Any]) -> Any:
        if self._ws is None:
            raise LedgerConnectionError("WebSocket channel is not connected")

        self._request_id += 1
        request_id = self._request_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "id": request_id,
                "method": method,
                "params": params,
            }))
            reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        finally:
            self._pending.pop(request_id, None)

        if reply.get("error"):
            raise LedgerConnectionError(f"{method} failed: {reply['error']}")
        return reply.get("result")

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                self._handle_message(message)
            self.logger.info("WebSocket connection closed")
        except websockets.exceptions.ConnectionClosed as e:
            self.logger.warning(f"WebSocket connection closed: {e}")
        except Exception as e:
            self.logger.error(f"WebSocket error: {e}")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(LedgerConnectionError("WebSocket channel closed"))
            if self._ws is ws:
                self._ws = None
                if not self._closed:
                    self._schedule_reconnection()

    def _handle_message(self, message: str | bytes) -> None:
        try:
            payload = json.loads(message)
        except ValueError as e:
            self.logger.warning(f"Invalid JSON message on push channel: {e}")
            return
        if not isinstance(payload, dict):
            return

        if payload.get("method") == "eth_subscription":
            params = payload.get("params") or {}
            subscription = self._subscriptions_by_id.get(params.get("subscription"))
            result = params.get("result")
            if subscription is None or not subscription.active or not result:
                return
            try:
                self._dispatch(subscription, format_log(result))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Malformed log notification: {e}")
            return

        request_id = payload.get("id")
        if not isinstance(request_id, int):
            return
        future = self._pending.get(request_id)
        if future is not None and not future.done():
            future.set_result(payload)

    def _dispatch(self, subscription: LogSubscription, log: AttributeDict) -> None:
        try:
            subscription.handler(log)
        except Exception as e:
            self.logger.error(f"Log handler failed: {e}")

    def _schedule_reconnection(self) -> None:
        """Schedule one reconnection attempt, replacing any pending one."""
        pending = self._reconnect_task
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            pending.cancel()
        self._reconnect_task = None

        attempt = self._reconnect_attempts + 1
        max_attempts = self.reconnect_policy.max_attempts
        if max_attempts is not None and attempt > max_attempts:
            self.logger.error(
                f"Giving up WebSocket reconnection after {self._reconnect_attempts} attempts"
            )
            return

        self._reconnect_attempts = attempt
        delay = self.reconnect_policy.delay_for(attempt)
        self.logger.info(f"Reconnecting WebSocket in {delay:.1f}s (attempt {attempt})")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closed:
            return
        self.logger.info("Attempting to reconnect WebSocket...")
        try:
            await self._open_channel()
        except Exception as e:
            self.logger.error(f"WebSocket reconnection failed: {e}")
            if self._ws is not None:
                # channel opened but resubscribing failed, drop it and retry
                ws = self._ws
                self._ws = None
                await ws.close()
            self._schedule_reconnection()

    async def _poll_logs(self, subscription: LogSubscription) -> None:
        next_block = None
        while subscription.active:
            try:
                head = await self.get_block_number()
                if next_block is None:
                    next_block = head + 1
                elif head >= next_block:
                    logs = await self.get_logs({
                        **subscription.filter_params,
                        "fromBlock": next_block,
                        "toBlock": head,
                    })
                    for log in sorted(logs, key=lambda item: (item['blockNumber'], item['logIndex'])):
                        self._dispatch(subscription, log)
                    next_block = head + 1
            except Exception as e:
                self.logger.warning(f"Log polling failed: {e}")
            await asyncio.sleep(self.poll_interval)
