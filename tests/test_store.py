from datetime import datetime, timezone

import pytest

from conftest import ALICE, BOB, FakeRedis, TOKEN_ADDRESS, tx_hash_for
from core.exceptions import StoreConnectionError
from indexer.entities import IndexedEvent, IndexedTransaction
from indexer.store import IndexStore

BLOCK_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_event(
    block_number: int,
    log_index: int = 0,
    contract_address: str = TOKEN_ADDRESS,
    event_name: str = "Transfer"
) -> IndexedEvent:
    return IndexedEvent(
        contract_address=contract_address,
        contract_name="TestToken",
        event_name=event_name,
        block_number=block_number,
        transaction_hash=tx_hash_for(block_number, log_index),
        transaction_index=log_index,
        log_index=log_index,
        args={"value": "1"},
        timestamp=BLOCK_TIME
    )


def make_transaction(
    block_number: int,
    transaction_index: int,
    from_address: str = ALICE,
    to_address: str = TOKEN_ADDRESS
) -> IndexedTransaction:
    return IndexedTransaction(
        hash=tx_hash_for(block_number, transaction_index),
        block_number=block_number,
        block_hash="0x" + "00" * 32,
        transaction_index=transaction_index,
        from_address=from_address,
        to_address=to_address,
        value="0",
        gas_price="1",
        gas_limit="21000",
        gas_used="21000",
        nonce=transaction_index,
        data="0x",
        timestamp=BLOCK_TIME
    )


class TestIndexStore:
    """
    Unit tests for the Redis index store.
    """

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, logger):
        redis = FakeRedis()
        redis.fail_ping = True
        store = IndexStore(redis, logger=logger)

        with pytest.raises(StoreConnectionError):
            await store.connect()

    @pytest.mark.asyncio
    async def test_save_events_is_idempotent(self, store, fake_redis):
        """
        Re-saving an event upserts it instead of duplicating it.

        Parameters
        ----------
        store : IndexStore
            Store under test
        fake_redis : FakeRedis
            In-memory Redis
        """
        event = make_event(100, 2)

        await store.save_events([event])
        await store.save_events([event])

        assert await store.count_events(TOKEN_ADDRESS) == 1
        stored = await store.get_event(event.transaction_hash, 2)
        assert stored == event
        assert fake_redis.executed_pipelines == 2

    @pytest.mark.asyncio
    async def test_empty_batches_are_noops(self, store, fake_redis):
        await store.save_events([])
        await store.save_transactions([])
        assert fake_redis.executed_pipelines == 0

    @pytest.mark.asyncio
    async def test_events_are_ordered_by_block_and_log_index(self, store):
        await store.save_events([make_event(101, 5), make_event(100, 9), make_event(101, 0)])

        latest = await store.get_events(limit=2)
        assert [(e.block_number, e.log_index) for e in latest] == [(101, 5), (101, 0)]

        in_range = await store.get_events_in_range(TOKEN_ADDRESS, 100, 101)
        assert [(e.block_number, e.log_index) for e in in_range] == [(100, 9), (101, 0), (101, 5)]

        assert await store.get_events_in_range(TOKEN_ADDRESS, 102, 200) == []

    @pytest.mark.asyncio
    async def test_transactions_by_block(self, store):
        await store.save_transactions([make_transaction(50, 3), make_transaction(50, 1), make_transaction(51, 0)])

        block_transactions = await store.get_transactions_by_block(50)
        assert [tx.transaction_index for tx in block_transactions] == [1, 3]

        stored = await store.get_transaction(tx_hash_for(51, 0))
        assert stored is not None and stored.block_number == 51
        assert await store.get_transaction("0xmissing") is None

    @pytest.mark.asyncio
    async def test_sync_state_never_moves_backwards(self, store):
        """
        Out-of-order updates cannot regress the resume point.
        """
        assert await store.get_sync_state(TOKEN_ADDRESS) is None

        assert await store.update_sync_state(TOKEN_ADDRESS, "TestToken", 150) is True
        assert await store.update_sync_state(TOKEN_ADDRESS, "TestToken", 120) is False
        assert await store.update_sync_state(TOKEN_ADDRESS, "TestToken", 150) is True

        state = await store.get_sync_state(TOKEN_ADDRESS)
        assert state.last_processed_block == 150
        assert state.contract_name == "TestToken"
        assert state.is_active is True

    @pytest.mark.asyncio
    async def test_sync_states_can_be_deactivated(self, store):
        await store.update_sync_state(TOKEN_ADDRESS, "TestToken", 10)
        await store.update_sync_state("0x" + "CD" * 20, "Other", 20)

        await store.set_sync_states_inactive()

        states = await store.get_all_sync_states()
        assert len(states) == 2
        assert all(not state.is_active for state in states)
        assert {state.last_processed_block for state in states} == {10, 20}

    @pytest.mark.asyncio
    async def test_mark_events_as_confirmed_up_to_boundary(self, store):
        """
        Only events at or below the boundary are confirmed, each once.
        """
        await store.save_events([make_event(block) for block in range(985, 994)])

        assert await store.mark_events_as_confirmed(988) == 4
        assert await store.mark_events_as_confirmed(988) == 0

        events = await store.get_events_in_range(TOKEN_ADDRESS, 985, 993)
        assert {e.block_number for e in events if e.confirmed} == {985, 986, 987, 988}

        assert await store.mark_events_as_confirmed(993) == 5
        events = await store.get_events_in_range(TOKEN_ADDRESS, 985, 993)
        assert all(e.confirmed for e in events)

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, store, fake_redis):
        await store.disconnect()
        assert fake_redis.closed

    @pytest.mark.asyncio
    async def test_confirmation_keeps_concurrent_upsert(self, store, fake_redis):
        """
        An upsert landing while events are confirmed is kept, not overwritten.

        Parameters
        ----------
        store : IndexStore
            Store under test
        fake_redis : FakeRedis
            In-memory Redis
        """
        await store.save_events([make_event(100), make_event(101)])
        updated = make_event(100).model_copy(update={"args": {"value": "2"}})

        async def upsert():
            await store.save_events([updated])

        fake_redis.after_mget = upsert

        assert await store.mark_events_as_confirmed(101) == 2

        stored = await store.get_event(updated.transaction_hash, 0)
        assert stored.args == {"value": "2"}
        assert stored.confirmed is True
        assert await store.count_events(confirmed=False) == 0


class TestIndexStoreQueries:
    """
    Unit tests for filtered and paged reads.
    """

    @pytest.mark.asyncio
    async def test_events_are_filtered_and_paged(self, store):
        other = "0x" + "cd" * 20
        await store.save_events(
            [make_event(block) for block in range(100, 105)]
            + [make_event(102, 1, event_name="Approval"), make_event(103, 2, contract_address=other)]
        )

        def positions(events):
            return [(e.block_number, e.log_index) for e in events]

        assert await store.count_events() == 7
        assert positions(await store.get_events(limit=2, offset=1)) == [(103, 2), (103, 0)]

        transfers = await store.get_events(contract_address=TOKEN_ADDRESS.lower(), event_name="Transfer")
        assert positions(transfers) == [(104, 0), (103, 0), (102, 0), (101, 0), (100, 0)]
        assert positions(await store.get_events(event_name="Approval")) == [(102, 1)]
        assert await store.count_events(TOKEN_ADDRESS) == 6
        assert await store.count_events(other) == 1

        in_range = await store.get_events(from_block=102, to_block=103)
        assert positions(in_range) == [(103, 2), (103, 0), (102, 1), (102, 0)]
        assert await store.count_events(from_block=102, to_block=103) == 4
        assert await store.get_events(offset=7) == []

    @pytest.mark.asyncio
    async def test_events_are_filtered_by_confirmation(self, store):
        """
        Confirmed and unconfirmed pages skip each other without gaps.
        """
        await store.save_events(
            [make_event(block) for block in range(100, 106)]
            + [make_event(104, 1, contract_address="0x" + "cd" * 20)]
        )
        await store.mark_events_as_confirmed(102)

        confirmed = await store.get_events(confirmed=True)
        assert [e.block_number for e in confirmed] == [102, 101, 100]
        assert all(e.confirmed for e in confirmed)
        assert [e.block_number for e in await store.get_events(confirmed=True, offset=1, limit=1)] == [101]

        pending = await store.get_events(confirmed=False, limit=2)
        assert [(e.block_number, e.log_index) for e in pending] == [(105, 0), (104, 1)]
        token_pending = await store.get_events(contract_address=TOKEN_ADDRESS, confirmed=False)
        assert [e.block_number for e in token_pending] == [105, 104, 103]

        assert await store.count_events(confirmed=True) == 3
        assert await store.count_events(confirmed=False) == 4
        assert await store.count_events(TOKEN_ADDRESS, confirmed=False) == 3
        assert await store.count_events(TOKEN_ADDRESS, from_block=101, to_block=103, confirmed=True) == 2

    @pytest.mark.asyncio
    async def test_transactions_by_address(self, store):
        await store.save_transactions([
            make_transaction(50, 0),
            make_transaction(51, 1, to_address=BOB),
            make_transaction(52, 0, from_address=BOB),
            make_transaction(53, 0, to_address=""),
        ])

        def positions(transactions):
            return [(tx.block_number, tx.transaction_index) for tx in transactions]

        sent = await store.get_transactions(from_address=ALICE.lower())
        assert positions(sent) == [(53, 0), (51, 1), (50, 0)]
        assert await store.count_transactions(from_address=ALICE) == 3

        received = await store.get_transactions(to_address=TOKEN_ADDRESS)
        assert positions(received) == [(52, 0), (50, 0)]

        between = await store.get_transactions(from_address=ALICE, to_address=TOKEN_ADDRESS)
        assert positions(between) == [(50, 0)]
        assert await store.count_transactions(from_address=ALICE, to_address=TOKEN_ADDRESS) == 1

        assert positions(await store.get_transactions(limit=2, offset=1)) == [(52, 0), (51, 1)]
        assert await store.count_transactions() == 4
        assert await store.count_transactions(from_block=51, to_block=52) == 2

        assert positions(await store.get_transactions_by_address(BOB.lower())) == [(52, 0), (51, 1)]
        assert positions(await store.get_transactions_by_address(ALICE, limit=2)) == [(53, 0), (51, 1)]
        assert positions(await store.get_transactions_by_address(BOB, direction="to")) == [(51, 1)]
        with pytest.raises(ValueError):
            await store.get_transactions_by_address(BOB, direction="sideways")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit, offset", [(0, 0), (-1, 0), (10, -1)])
    async def test_invalid_page_is_rejected(self, store, limit, offset):
        with pytest.raises(ValueError):
            await store.get_events(limit=limit, offset=offset)
        with pytest.raises(ValueError):
            await store.get_transactions(limit=limit, offset=offset)
