import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any

from web3.datastructures import AttributeDict

from core.exceptions import TransactionFetchError
from indexer.connection import ConnectionManager
from indexer.entities import ContractDescriptor, IndexedEvent, IndexedTransaction
from indexer.serialization import serialize_args, to_hex

UNKNOWN_EVENT = "UnknownEvent"


class Normalizer:
    """
    Converts raw ledger events and transactions into storage-ready records.

    Parameters
    ----------
    connection : ConnectionManager
        Ledger access used for block, transaction and receipt lookups
    logger : logging.Logger
        Logger instance
    block_cache_size : int
        Number of block timestamps kept in memory
    """

    def __init__(
        self,
        connection: ConnectionManager,
        logger: logging.Logger,
        block_cache_size: int = 256
    ):
        self.connection = connection
        self.logger = logger
        self.block_cache_size = block_cache_size
        self._timestamps: OrderedDict[int, datetime] = OrderedDict()

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """
        Timestamp of a block, cached per block number.

        Parameters
        ----------
        block_number : int
            Block number

        Returns
        -------
        datetime
            Block time in UTC
        """
        cached = self._timestamps.get(block_number)
        if cached is not None:
            self._timestamps.move_to_end(block_number)
            return cached

        block = await self.connection.get_block(block_number)
        timestamp = datetime.fromtimestamp(block['timestamp'], tz=timezone.utc)

        self._timestamps[block_number] = timestamp
        if len(self._timestamps) > self.block_cache_size:
            self._timestamps.popitem(last=False)
        return timestamp

    async def to_indexed_event(
        self,
        event: AttributeDict,
        descriptor: ContractDescriptor
    ) -> IndexedEvent:
        """
        Build an IndexedEvent from a decoded event.

        Parameters
        ----------
        event : AttributeDict
            Decoded event as returned by the contract listener
        descriptor : ContractDescriptor
            Emitting contract

        Returns
        -------
        IndexedEvent
            Unconfirmed event record
        """
        timestamp = await self.get_block_timestamp(event['blockNumber'])
        return IndexedEvent(
            contract_address=descriptor.address,
            contract_name=descriptor.name,
            event_name=event.get('event') or UNKNOWN_EVENT,
            block_number=event['blockNumber'],
            transaction_hash=to_hex(event['transactionHash']),
            transaction_index=event['transactionIndex'],
            log_index=event['logIndex'],
            args=serialize_args(event.get('args') or {}),
            timestamp=timestamp,
            confirmed=False
        )

    async def to_indexed_transaction(self, tx_hash: str) -> IndexedTransaction | None:
        """
        Fetch a transaction with its receipt and block.

        Parameters
        ----------
        tx_hash : str
            Transaction hash

        Returns
        -------
        IndexedTransaction | None
            Transaction record, or None when the node does not know the
            transaction or its receipt yet

        Raises
        ------
        TransactionFetchError
            If any ledger lookup fails
        """
        try:
            tx, receipt = await asyncio.gather(
                self.connection.get_transaction(tx_hash),
                self.connection.get_transaction_receipt(tx_hash)
            )
            if tx is None or receipt is None:
                return None
            timestamp = await self.get_block_timestamp(tx['blockNumber'])
        except Exception as e:
            raise TransactionFetchError(f"Failed to process transaction {tx_hash}: {e}") from e

        return IndexedTransaction(
            hash=to_hex(tx['hash']),
            block_number=tx['blockNumber'],
            block_hash=to_hex(tx['blockHash']),
            transaction_index=tx['transactionIndex'],
            from_address=tx['from'],
            to_address=tx.get('to') or '',
            value=str(tx.get('value', 0)),
            gas_price=str(tx.get('gasPrice') or 0),
            gas_limit=str(tx.get('gas', 0)),
            gas_used=str(receipt.get('gasUsed', 0)),
            nonce=tx['nonce'],
            data=to_hex(tx.get('input') or '0x'),
            timestamp=timestamp,
            status=receipt.get('status'),
            contract_address=receipt.get('contractAddress') or None,
            logs=[self._normalize_receipt_log(log) for log in receipt.get('logs') or []]
        )

    @staticmethod
    def _normalize_receipt_log(log: Any) -> dict[str, Any]:
        return {
            'address': log.get('address'),
            'topics': [to_hex(topic) for topic in log.get('topics') or []],
            'data': to_hex(log.get('data') or '0x'),
            'blockNumber': log.get('blockNumber'),
            'transactionHash': to_hex(log.get('transactionHash') or ''),
            'transactionIndex': log.get('transactionIndex'),
            'logIndex': log.get('logIndex'),
            'removed': bool(log.get('removed', False)),
        }
