import logging
from typing import Any, Callable

from eth_utils import event_abi_to_log_topic
from web3 import Web3
from web3.datastructures import AttributeDict

from core.exceptions import EventQueryError
from indexer.connection import ConnectionManager, LogSubscription
from indexer.entities import ContractDescriptor
from indexer.serialization import to_hex

EventHandler = Callable[[AttributeDict, "ContractListener"], None]


class ContractListener:
    """
    Event filters of one contract.

    One filter is built per tracked event (every declared, non-anonymous
    event when the descriptor tracks none). Logs are decoded with the
    contract ABI; logs that do not decode come back with no event name
    and their raw ``topics`` / ``data`` as args.

    Parameters
    ----------
    descriptor : ContractDescriptor
        Contract to listen to, with its ABI resolved
    connection : ConnectionManager
        Ledger access
    logger : logging.Logger
        Logger instance
    """

    def __init__(
        self,
        descriptor: ContractDescriptor,
        connection: ConnectionManager,
        logger: logging.Logger
    ):
        self.descriptor = descriptor
        self.connection = connection
        self.logger = logger
        self.contract = connection.contract(descriptor.address, descriptor.abi)
        self.event_filters: dict[str, dict[str, Any]] = {}
        self._event_names_by_topic: dict[str, str] = {}
        self._subscriptions: list[LogSubscription] = []
        self._setup_event_filters()

    @property
    def address(self) -> str:
        return self.descriptor.address

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def is_listening(self) -> bool:
        return bool(self._subscriptions)

    def _setup_event_filters(self) -> None:
        declared = {
            item['name']: item
            for item in self.descriptor.abi
            if item.get('type') == 'event' and not item.get('anonymous')
        }
        event_names = self.descriptor.events or tuple(declared)

        for event_name in event_names:
            event_abi = declared.get(event_name)
            if event_abi is None:
                self.logger.warning(
                    f"Event '{event_name}' is not declared in the {self.name} ABI, skipping"
                )
                continue
            topic = Web3.to_hex(event_abi_to_log_topic(event_abi))
            self._event_names_by_topic[topic] = event_name
            self.event_filters[event_name] = {
                'address': self.address,
                'topics': [topic],
            }

        self.logger.info(f"Contract {self.name}: tracking events {list(self.event_filters)}")

    def decode_log(self, log: AttributeDict) -> AttributeDict:
        """
        Decode a raw log against the contract ABI.

        Parameters
        ----------
        log : AttributeDict
            Raw log as returned by ``eth_getLogs``

        Returns
        -------
        AttributeDict
            Decoded event data, or the raw log with ``event`` set to None
        """
        topics = log.get('topics') or []
        event_name = None
        if topics:
            event_name = self._event_names_by_topic.get(to_hex(topics[0]).lower())

        if event_name is not None:
            try:
                return getattr(self.contract.events, event_name).process_log(log)
            except Exception as e:
                self.logger.warning(f"Failed to decode event {event_name}: {e}")

        return AttributeDict({
            **dict(log),
            'event': None,
            'args': {
                'topics': [to_hex(topic) for topic in topics],
                'data': to_hex(log.get('data') or '0x'),
            },
        })

    async def get_historical_events(self, from_block: int, to_block: int) -> list[AttributeDict]:
        """
        Query every filter over an inclusive block range.

        Parameters
        ----------
        from_block : int
            First block of the range
        to_block : int
            Last block of the range

        Returns
        -------
        list[AttributeDict]
            Decoded events sorted by ``(blockNumber, logIndex)``

        Raises
        ------
        EventQueryError
            If any filter query fails
        """
        events = []

        for event_name, filter_params in self.event_filters.items():
            try:
                logs = await self.connection.get_logs({
                    **filter_params,
                    'fromBlock': from_block,
                    'toBlock': to_block,
                })
            except Exception as e:
                raise EventQueryError(event_name, str(e)) from e
            events.extend(self.decode_log(log) for log in logs)

        events.sort(key=lambda event: (event['blockNumber'], event['logIndex']))
        return events

    async def start_listening(self, handler: EventHandler) -> None:
        """
        Register one push subscription per filter.

        Parameters
        ----------
        handler : EventHandler
            Called with each decoded event and this listener
        """
        if self._subscriptions:
            self.logger.warning(f"Contract {self.name} is already listening")
            return

        for filter_params in self.event_filters.values():
            subscription = await self.connection.subscribe_logs(
                filter_params,
                lambda log: handler(self.decode_log(log), self)
            )
            self._subscriptions.append(subscription)

    async def stop_listening(self) -> None:
        """Detach every subscription once. Safe to call repeatedly."""
        while self._subscriptions:
            subscription = self._subscriptions.pop()
            await subscription.cancel()
