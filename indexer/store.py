import asyncio
import logging
from collections import defaultdict
from typing import TypeVar

from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import WatchError

from core.exceptions import StoreConnectionError
from indexer.entities import IndexedEvent, IndexedTransaction, SyncState, utcnow

# composite sorted-set score: block_number * LOG_INDEX_SLOTS + position in block
LOG_INDEX_SLOTS = 1_000_000

ModelT = TypeVar("ModelT", bound=BaseModel)


class IndexStore:
    """
    Persistent store for indexed events, transactions and sync state.

    Records are JSON documents keyed by their natural key, so every write
    is an idempotent upsert. Sorted sets keep events ordered by
    ``(blockNumber, logIndex)`` globally, per contract, per event name,
    per contract and event name, and for the unconfirmed set swept by the
    confirmation tracker. Transactions are ordered by
    ``(blockNumber, transactionIndex)`` globally, per block, per sender
    and per recipient.

    Parameters
    ----------
    redis_client : Redis
        Redis client instance
    logger : logging.Logger
        Logger instance
    prefix : str
        Key prefix
    """

    def __init__(self, redis_client: Redis, logger: logging.Logger, prefix: str = "indexer"):
        self.redis = redis_client
        self.logger = logger
        self.prefix = prefix
        self._sync_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # keys

    def _event_key(self, member: str) -> str:
        return f"{self.prefix}:event:{member}"

    def _contract_events_key(self, contract_address: str) -> str:
        return f"{self.prefix}:events:contract:{contract_address.lower()}"

    def _named_events_key(self, event_name: str) -> str:
        return f"{self.prefix}:events:name:{event_name}"

    def _contract_named_events_key(self, contract_address: str, event_name: str) -> str:
        return f"{self._contract_events_key(contract_address)}:name:{event_name}"

    def _events_index_key(self, contract_address: str | None, event_name: str | None) -> str:
        if contract_address and event_name:
            return self._contract_named_events_key(contract_address, event_name)
        if contract_address:
            return self._contract_events_key(contract_address)
        if event_name:
            return self._named_events_key(event_name)
        return self._events_key

    def _transaction_key(self, tx_hash: str) -> str:
        return f"{self.prefix}:tx:{tx_hash}"

    def _block_transactions_key(self, block_number: int) -> str:
        return f"{self.prefix}:txs:block:{block_number}"

    def _sender_transactions_key(self, address: str) -> str:
        return f"{self.prefix}:txs:from:{address.lower()}"

    def _recipient_transactions_key(self, address: str) -> str:
        return f"{self.prefix}:txs:to:{address.lower()}"

    @property
    def _events_key(self) -> str:
        return f"{self.prefix}:events"

    @property
    def _unconfirmed_key(self) -> str:
        return f"{self.prefix}:events:unconfirmed"

    @property
    def _transactions_key(self) -> str:
        return f"{self.prefix}:txs"

    @property
    def _sync_state_key(self) -> str:
        return f"{self.prefix}:sync_state"

    @staticmethod
    def _score(block_number: int, position: int = 0) -> int:
        return block_number * LOG_INDEX_SLOTS + position

    @classmethod
    def _score_range(cls, from_block: int | None, to_block: int | None) -> tuple[int | str, int | str]:
        low = "-inf" if from_block is None else cls._score(from_block)
        high = "+inf" if to_block is None else cls._score(to_block, LOG_INDEX_SLOTS - 1)
        return low, high

    @staticmethod
    def _check_page(limit: int, offset: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        if offset < 0:
            raise ValueError(f"offset must not be negative, got {offset}")

    # lifecycle

    async def connect(self) -> None:
        """
        Check that Redis answers.

        Raises
        ------
        StoreConnectionError
            If Redis cannot be reached
        """
        try:
            await self.redis.ping()
        except Exception as e:
            raise StoreConnectionError(f"Failed to connect to Redis: {e}") from e
        self.logger.info("Connected to Redis index store")

    async def disconnect(self) -> None:
        await self.redis.aclose()
        self.logger.info("Disconnected from Redis index store")

    # writes

    async def save_events(self, events: list[IndexedEvent]) -> None:
        """
        Upsert events keyed on ``(transactionHash, logIndex)``.

        All writes of the call are applied in one MULTI/EXEC transaction.

        Parameters
        ----------
        events : list[IndexedEvent]
            Events to store
        """
        if not events:
            return

        async with self.redis.pipeline(transaction=True) as pipe:
            for event in events:
                member = event.key
                score = self._score(event.block_number, event.log_index)
                pipe.set(self._event_key(member), event.model_dump_json(by_alias=True))
                for key in (
                    self._events_key,
                    self._contract_events_key(event.contract_address),
                    self._named_events_key(event.event_name),
                    self._contract_named_events_key(event.contract_address, event.event_name),
                ):
                    pipe.zadd(key, {member: score})
                if event.confirmed:
                    pipe.zrem(self._unconfirmed_key, member)
                else:
                    pipe.zadd(self._unconfirmed_key, {member: score})
            await pipe.execute()

    async def save_transactions(self, transactions: list[IndexedTransaction]) -> None:
        """
        Upsert transactions keyed on their hash, in one transaction.

        Parameters
        ----------
        transactions : list[IndexedTransaction]
            Transactions to store
        """
        if not transactions:
            return

        async with self.redis.pipeline(transaction=True) as pipe:
            for tx in transactions:
                score = self._score(tx.block_number, tx.transaction_index)
                pipe.set(self._transaction_key(tx.hash), tx.model_dump_json(by_alias=True))
                pipe.zadd(self._transactions_key, {tx.hash: score})
                pipe.zadd(
                    self._block_transactions_key(tx.block_number),
                    {tx.hash: tx.transaction_index}
                )
                pipe.zadd(self._sender_transactions_key(tx.from_address), {tx.hash: score})
                # contract creations have no recipient
                if tx.to_address:
                    pipe.zadd(self._recipient_transactions_key(tx.to_address), {tx.hash: score})
            await pipe.execute()

    async def update_sync_state(
        self,
        contract_address: str,
        contract_name: str,
        block_number: int
    ) -> bool:
        """
        Advance the resume point of a contract.

        Updates that would move ``lastProcessedBlock`` backwards are ignored,
        so concurrent live updates finishing out of order cannot regress it.

        Parameters
        ----------
        contract_address : str
            Contract address
        contract_name : str
            Contract display name
        block_number : int
            Last fully processed block

        Returns
        -------
        bool
            True if the state was written
        """
        async with self._sync_locks[contract_address]:
            current = await self.get_sync_state(contract_address)
            if current is not None and block_number < current.last_processed_block:
                self.logger.debug(
                    f"Ignoring sync state {block_number} for {contract_name}, "
                    f"already at {current.last_processed_block}"
                )
                return False

            state = SyncState(
                contract_address=contract_address,
                contract_name=contract_name,
                last_processed_block=block_number,
                is_active=True,
                last_updated=utcnow()
            )
            await self.redis.hset(
                self._sync_state_key,
                contract_address,
                state.model_dump_json(by_alias=True)
            )
            return True

    async def set_sync_states_inactive(self) -> None:
        """Flag every sync state as inactive."""
        states = await self.get_all_sync_states()
        if not states:
            return

        mapping = {}
        for state in states:
            state.is_active = False
            state.last_updated = utcnow()
            mapping[state.contract_address] = state.model_dump_json(by_alias=True)
        await self.redis.hset(self._sync_state_key, mapping=mapping)

    async def mark_events_as_confirmed(self, block_number: int) -> int:
        """
        Confirm every unconfirmed event at or below a block.

        The event documents are watched while they are rewritten, so an
        upsert landing between the read and the write restarts the
        confirmation instead of being overwritten by a stale copy.

        Parameters
        ----------
        block_number : int
            Confirmation boundary (inclusive)

        Returns
        -------
        int
            Number of events flipped to confirmed
        """
        members = await self.redis.zrangebyscore(
            self._unconfirmed_key,
            "-inf",
            self._score(block_number, LOG_INDEX_SLOTS - 1)
        )
        if not members:
            return 0

        keys = [self._event_key(member) for member in members]
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*keys)
                    payloads = await pipe.mget(keys)

                    pipe.multi()
                    confirmed = 0
                    for key, member, payload in zip(keys, members, payloads):
                        if payload is not None:
                            event = IndexedEvent.model_validate_json(payload)
                            event.confirmed = True
                            pipe.set(key, event.model_dump_json(by_alias=True))
                            confirmed += 1
                        pipe.zrem(self._unconfirmed_key, member)
                    await pipe.execute()
                    return confirmed
                except WatchError:
                    self.logger.debug(f"Events up to block {block_number} changed while confirming, retrying")

    # reads

    async def _load_many(self, keys: list[str], model: type[ModelT]) -> list[ModelT]:
        if not keys:
            return []
        payloads = await self.redis.mget(keys)
        return [model.model_validate_json(payload) for payload in payloads if payload is not None]

    async def _members_in(self, key: str, members: list[str]) -> list[str]:
        """Members also present in the sorted set ``key``, order kept."""
        if not members:
            return []
        scores = await self.redis.zmscore(key, members)
        return [member for member, score in zip(members, scores) if score is not None]

    async def _pending_members(self, key: str, low: int | str, high: int | str) -> list[str]:
        """Unconfirmed members of an event index within a score range, newest first."""
        members = await self.redis.zrevrangebyscore(self._unconfirmed_key, high, low)
        if key == self._events_key:
            return members
        return await self._members_in(key, members)

    async def get_sync_state(self, contract_address: str) -> SyncState | None:
        payload = await self.redis.hget(self._sync_state_key, contract_address)
        if payload is None:
            return None
        return SyncState.model_validate_json(payload)

    async def get_all_sync_states(self) -> list[SyncState]:
        payloads = await self.redis.hgetall(self._sync_state_key)
        return [SyncState.model_validate_json(payload) for payload in payloads.values()]

    async def get_event(self, transaction_hash: str, log_index: int) -> IndexedEvent | None:
        payload = await self.redis.get(self._event_key(f"{transaction_hash}:{log_index}"))
        if payload is None:
            return None
        return IndexedEvent.model_validate_json(payload)

    async def get_events(
        self,
        limit: int = 100,
        offset: int = 0,
        contract_address: str | None = None,
        event_name: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        confirmed: bool | None = None
    ) -> list[IndexedEvent]:
        """
        Page of events matching the filters, newest first.

        Parameters
        ----------
        limit : int
            Maximum number of events
        offset : int
            Number of matching events to skip
        contract_address : str | None
            Restrict to one contract
        event_name : str | None
            Restrict to one event name
        from_block : int | None
            Lowest block (inclusive)
        to_block : int | None
            Highest block (inclusive)
        confirmed : bool | None
            Restrict to confirmed (True) or unconfirmed (False) events

        Returns
        -------
        list[IndexedEvent]
            Events sorted by descending ``(blockNumber, logIndex)``

        Raises
        ------
        ValueError
            If ``limit`` is not positive or ``offset`` is negative
        """
        self._check_page(limit, offset)
        key = self._events_index_key(contract_address, event_name)
        low, high = self._score_range(from_block, to_block)

        if confirmed is None:
            members = await self.redis.zrevrangebyscore(key, high, low, start=offset, num=limit)
        elif not confirmed:
            members = (await self._pending_members(key, low, high))[offset:offset + limit]
        else:
            # unconfirmed events are bounded by the confirmation depth
            pending = set(await self._pending_members(key, low, high))
            window = await self.redis.zrevrangebyscore(
                key, high, low, start=0, num=offset + limit + len(pending)
            )
            members = [member for member in window if member not in pending][offset:offset + limit]

        return await self._load_many([self._event_key(member) for member in members], IndexedEvent)

    async def count_events(
        self,
        contract_address: str | None = None,
        event_name: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        confirmed: bool | None = None
    ) -> int:
        """Number of events matching the filters of ``get_events``."""
        key = self._events_index_key(contract_address, event_name)
        low, high = self._score_range(from_block, to_block)

        total = await self.redis.zcount(key, low, high)
        if confirmed is None:
            return total
        pending = len(await self._pending_members(key, low, high))
        return total - pending if confirmed else pending

    async def get_events_in_range(
        self,
        contract_address: str,
        from_block: int,
        to_block: int
    ) -> list[IndexedEvent]:
        """Events of one contract in an inclusive block range, ascending."""
        low, high = self._score_range(from_block, to_block)
        members = await self.redis.zrangebyscore(self._contract_events_key(contract_address), low, high)
        return await self._load_many([self._event_key(member) for member in members], IndexedEvent)

    async def get_transaction(self, tx_hash: str) -> IndexedTransaction | None:
        payload = await self.redis.get(self._transaction_key(tx_hash))
        if payload is None:
            return None
        return IndexedTransaction.model_validate_json(payload)

    async def get_transactions_by_block(self, block_number: int) -> list[IndexedTransaction]:
        """Transactions of a block ordered by transaction index."""
        hashes = await self.redis.zrange(self._block_transactions_key(block_number), 0, -1)
        return await self._load_many([self._transaction_key(tx_hash) for tx_hash in hashes], IndexedTransaction)

    def _transactions_index_key(self, from_address: str | None, to_address: str | None) -> str:
        if from_address:
            return self._sender_transactions_key(from_address)
        if to_address:
            return self._recipient_transactions_key(to_address)
        return self._transactions_key

    async def _exchanged_hashes(
        self,
        from_address: str,
        to_address: str,
        low: int | str,
        high: int | str
    ) -> list[str]:
        """Hashes sent by ``from_address`` to ``to_address``, newest first."""
        hashes = await self.redis.zrevrangebyscore(self._sender_transactions_key(from_address), high, low)
        return await self._members_in(self._recipient_transactions_key(to_address), hashes)

    async def get_transactions(
        self,
        limit: int = 100,
        offset: int = 0,
        from_address: str | None = None,
        to_address: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None
    ) -> list[IndexedTransaction]:
        """
        Page of transactions, newest first.

        Addresses are matched case-insensitively. Giving both addresses
        selects the transfers between them.

        Parameters
        ----------
        limit : int
            Maximum number of transactions
        offset : int
            Number of matching transactions to skip
        from_address : str | None
            Restrict to one sender
        to_address : str | None
            Restrict to one recipient
        from_block : int | None
            Lowest block (inclusive)
        to_block : int | None
            Highest block (inclusive)

        Returns
        -------
        list[IndexedTransaction]
            Transactions sorted by descending ``(blockNumber, transactionIndex)``
        """
        self._check_page(limit, offset)
        low, high = self._score_range(from_block, to_block)

        if from_address and to_address:
            hashes = await self._exchanged_hashes(from_address, to_address, low, high)
            hashes = hashes[offset:offset + limit]
        else:
            key = self._transactions_index_key(from_address, to_address)
            hashes = await self.redis.zrevrangebyscore(key, high, low, start=offset, num=limit)

        return await self._load_many([self._transaction_key(tx_hash) for tx_hash in hashes], IndexedTransaction)

    async def count_transactions(
        self,
        from_address: str | None = None,
        to_address: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None
    ) -> int:
        low, high = self._score_range(from_block, to_block)
        if from_address and to_address:
            return len(await self._exchanged_hashes(from_address, to_address, low, high))
        return await self.redis.zcount(self._transactions_index_key(from_address, to_address), low, high)

    async def get_transactions_by_address(
        self,
        address: str,
        direction: str = "all",
        limit: int = 100
    ) -> list[IndexedTransaction]:
        """
        Latest transactions sent or received by an address, newest first.

        Parameters
        ----------
        address : str
            Account or contract address
        direction : str
            ``"from"``, ``"to"`` or ``"all"`` for either side
        limit : int
            Maximum number of transactions

        Returns
        -------
        list[IndexedTransaction]
            Transactions sorted by descending ``(blockNumber, transactionIndex)``

        Raises
        ------
        ValueError
            If ``direction`` is unknown or ``limit`` is not positive
        """
        if direction == "from":
            return await self.get_transactions(limit=limit, from_address=address)
        if direction == "to":
            return await self.get_transactions(limit=limit, to_address=address)
        if direction != "all":
            raise ValueError(f"Unknown direction {direction!r}, expected 'from', 'to' or 'all'")

        self._check_page(limit, 0)
        scored: dict[str, float] = {}
        for key in (self._sender_transactions_key(address), self._recipient_transactions_key(address)):
            entries = await self.redis.zrevrangebyscore(key, "+inf", "-inf", start=0, num=limit, withscores=True)
            scored.update(entries)

        hashes = sorted(scored, key=scored.get, reverse=True)[:limit]
        return await self._load_many([self._transaction_key(tx_hash) for tx_hash in hashes], IndexedTransaction)
