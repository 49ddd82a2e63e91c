import asyncio
import logging
import os
from collections import defaultdict
from typing import Any

import pytest
import pytest_asyncio
from eth_abi import encode
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from redis.exceptions import WatchError
from web3 import Web3
from web3.datastructures import AttributeDict


# Set test environment variables before imports
os.environ['REDIS_HOST'] = 'localhost'
os.environ['REDIS_PORT'] = '6379'
os.environ['REDIS_DB'] = '0'
os.environ['REDIS_PASSWORD'] = ''  # No password for mock
os.environ['RPC_URL'] = 'http://localhost:8545'
os.environ['CONTRACTS_FILE'] = 'contracts.example.json'
os.environ['EXPLORER_API_KEY'] = 'test'

from indexer.entities import ContractDescriptor  # noqa: E402
from indexer.normalizer import Normalizer  # noqa: E402
from indexer.store import IndexStore  # noqa: E402


TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "ab" * 20)
ALICE = Web3.to_checksum_address("0x" + "11" * 20)
BOB = Web3.to_checksum_address("0x" + "22" * 20)

ERC20_EVENTS_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": True, "name": "spender", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Approval",
        "type": "event",
    },
]

TRANSFER_TOPIC = HexBytes(event_abi_to_log_topic(ERC20_EVENTS_ABI[0]))
APPROVAL_TOPIC = HexBytes(event_abi_to_log_topic(ERC20_EVENTS_ABI[1]))


def tx_hash_for(block_number: int, log_index: int) -> str:
    return "0x" + f"{block_number:032x}{log_index:032x}"


def address_topic(address: str) -> HexBytes:
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def make_log(
    block_number: int,
    log_index: int,
    value: int = 1,
    topic: HexBytes = TRANSFER_TOPIC,
    address: str = TOKEN_ADDRESS,
    tx_hash: str | None = None
) -> AttributeDict:
    """
    Build a raw log shaped like ``eth_getLogs`` output.

    Parameters
    ----------
    block_number : int
        Block of the log
    log_index : int
        Position of the log in its block
    value : int
        Encoded ``uint256`` value
    topic : HexBytes
        Event signature topic
    address : str
        Emitting contract
    tx_hash : str | None
        Transaction hash, derived from the position when omitted

    Returns
    -------
    AttributeDict
        Raw log
    """
    return AttributeDict({
        'address': address,
        'topics': [topic, address_topic(ALICE), address_topic(BOB)],
        'data': HexBytes(encode(['uint256'], [value])),
        'blockNumber': block_number,
        'blockHash': HexBytes(block_number.to_bytes(32, 'big')),
        'transactionHash': HexBytes(tx_hash or tx_hash_for(block_number, log_index)),
        'transactionIndex': log_index,
        'logIndex': log_index,
        'removed': False,
    })


class FakePipeline:
    """
    Queues commands and applies them on ``execute``.

    After ``watch`` commands run immediately until ``multi``. ``execute``
    raises ``WatchError`` if a watched key was written in between.
    """

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: list[tuple[str, tuple, dict]] = []
        self.watched: dict[str, int] = {}
        self.immediate = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.reset()

    def reset(self) -> None:
        self.commands.clear()
        self.watched = {}
        self.immediate = False

    async def watch(self, *names) -> bool:
        self.watched.update({name: self.redis.versions[name] for name in names})
        self.immediate = True
        return True

    def multi(self) -> None:
        self.immediate = False

    def __getattr__(self, name: str):
        if self.immediate:
            return getattr(self.redis, name)

        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self
        return queue

    async def execute(self) -> list[Any]:
        try:
            if any(self.redis.versions[name] != version for name, version in self.watched.items()):
                raise WatchError("Watched variable changed.")
            self.redis.executed_pipelines += 1
            results = []
            for name, args, kwargs in self.commands:
                results.append(await getattr(self.redis, name)(*args, **kwargs))
            return results
        finally:
            self.reset()


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with ``decode_responses=True``."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.hashes: defaultdict[str, dict[str, str]] = defaultdict(dict)
        self.zsets: defaultdict[str, dict[str, float]] = defaultdict(dict)
        self.versions: defaultdict[str, int] = defaultdict(int)
        self.executed_pipelines = 0
        self.fail_ping = False
        self.closed = False
        # awaited once right after the next ``mget``
        self.after_mget = None

    async def ping(self) -> bool:
        if self.fail_ping:
            raise ConnectionError("Connection refused")
        return True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value
        self.versions[key] += 1
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value)

    async def mget(self, keys):
        values = [self.values.get(key) for key in keys]
        hook, self.after_mget = self.after_mget, None
        if hook is not None:
            await hook()
        return values

    async def hget(self, name, key):
        return self.hashes[name].get(key)

    async def hset(self, name, key=None, value=None, mapping=None):
        if key is not None:
            self.hashes[name][key] = value
        if mapping:
            self.hashes[name].update(mapping)
        self.versions[name] += 1
        return 1

    async def hgetall(self, name):
        return dict(self.hashes[name])

    async def zadd(self, name, mapping):
        self.zsets[name].update(mapping)
        self.versions[name] += 1
        return len(mapping)

    async def zrem(self, name, *members):
        removed = 0
        for member in members:
            if self.zsets[name].pop(member, None) is not None:
                removed += 1
        self.versions[name] += 1
        return removed

    def _ordered(self, name) -> list[str]:
        return [member for member, _ in sorted(self.zsets[name].items(), key=lambda item: (item[1], item[0]))]

    def _in_range(self, name, min, max) -> list[str]:
        low, high = float(min), float(max)
        return [member for member in self._ordered(name) if low <= self.zsets[name][member] <= high]

    @staticmethod
    def _limit(members: list[str], start, num) -> list[str]:
        if start is None:
            return members
        if num < 0:
            return members[start:]
        return members[start:start + num]

    async def zrangebyscore(self, name, min, max, start=None, num=None):
        return self._limit(self._in_range(name, min, max), start, num)

    async def zrevrangebyscore(self, name, max, min, start=None, num=None, withscores=False):
        members = self._limit(list(reversed(self._in_range(name, min, max))), start, num)
        if withscores:
            return [(member, self.zsets[name][member]) for member in members]
        return members

    async def zcount(self, name, min, max):
        return len(self._in_range(name, min, max))

    async def zmscore(self, key, members):
        return [self.zsets[key].get(member) for member in members]

    async def zrange(self, name, start, end):
        members = self._ordered(name)
        return members[start:] if end == -1 else members[start:end + 1]

    async def zrevrange(self, name, start, end):
        members = list(reversed(self._ordered(name)))
        return members[start:] if end == -1 else members[start:end + 1]

    async def zcard(self, name):
        return len(self.zsets[name])

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class FakeSubscription:
    def __init__(self, ledger: "FakeLedger", filter_params, handler):
        self.ledger = ledger
        self.filter_params = filter_params
        self.handler = handler
        self.cancel_calls = 0

    async def cancel(self):
        self.cancel_calls += 1
        if self in self.ledger.subscriptions:
            self.ledger.subscriptions.remove(self)


class FakeLedger:
    """
    In-memory ledger exposing the ``ConnectionManager`` surface.

    Every log added through ``add_log`` gets a matching transaction and
    receipt.
    """

    def __init__(self, block_number: int = 0):
        self.block_number = block_number
        self.logs: list[AttributeDict] = []
        self.transactions: dict[str, AttributeDict] = {}
        self.receipts: dict[str, AttributeDict] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.get_logs_calls: list[dict[str, Any]] = []
        self.get_block_calls = 0
        self.fail_get_logs = 0
        self.fail_get_block = False
        self.fail_get_transaction = False
        self.connected = False

    def add_log(self, log: AttributeDict, value: int = 0) -> AttributeDict:
        self.logs.append(log)
        tx_hash = Web3.to_hex(log['transactionHash'])
        self.transactions[tx_hash] = AttributeDict({
            'hash': HexBytes(tx_hash),
            'blockNumber': log['blockNumber'],
            'blockHash': log['blockHash'],
            'transactionIndex': log['transactionIndex'],
            'from': ALICE,
            'to': log['address'],
            'value': value,
            'gasPrice': 30 * 10 ** 9,
            'gas': 60_000,
            'nonce': len(self.transactions),
            'input': HexBytes('0xa9059cbb'),
        })
        receipt_logs = [item for item in self.logs if item['transactionHash'] == log['transactionHash']]
        self.receipts[tx_hash] = AttributeDict({
            'gasUsed': 51_000,
            'status': 1,
            'contractAddress': None,
            'logs': receipt_logs,
        })
        return log

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_block(self, block_number: int, full_transactions: bool = False):
        self.get_block_calls += 1
        if self.fail_get_block:
            raise ConnectionError("block lookup failed")
        return AttributeDict({'number': block_number, 'timestamp': 1_700_000_000 + block_number})

    async def get_transaction(self, tx_hash: str):
        if self.fail_get_transaction:
            raise ConnectionError("transaction lookup failed")
        return self.transactions.get(tx_hash)

    async def get_transaction_receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash)

    async def get_logs(self, filter_params: dict[str, Any]):
        self.get_logs_calls.append(filter_params)
        if self.fail_get_logs:
            self.fail_get_logs -= 1
            raise ConnectionError("eth_getLogs timed out")
        return [
            log for log in self.logs
            if self._matches(log, filter_params)
            and filter_params['fromBlock'] <= log['blockNumber'] <= filter_params['toBlock']
        ]

    def contract(self, address: str, abi: list[dict[str, Any]]):
        return Web3().eth.contract(address=address, abi=abi)

    async def subscribe_logs(self, filter_params, handler) -> FakeSubscription:
        subscription = FakeSubscription(self, filter_params, handler)
        self.subscriptions.append(subscription)
        return subscription

    def push(self, log: AttributeDict) -> None:
        """Deliver a live log to every matching subscription."""
        for subscription in list(self.subscriptions):
            if self._matches(log, subscription.filter_params):
                subscription.handler(log)

    @staticmethod
    def _matches(log: AttributeDict, filter_params: dict[str, Any]) -> bool:
        if log['address'] != filter_params['address']:
            return False
        topics = filter_params.get('topics') or []
        return not topics or Web3.to_hex(log['topics'][0]) == topics[0]


async def next_notification(queue: asyncio.Queue, notification_type, timeout: float = 2.0):
    """Read notifications from a bus queue until one of the given type arrives."""
    while True:
        notification = await asyncio.wait_for(queue.get(), timeout=timeout)
        if notification.type == notification_type:
            return notification


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("evm_indexer.tests")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def descriptor() -> ContractDescriptor:
    return ContractDescriptor(
        address=TOKEN_ADDRESS,
        name="TestToken",
        abi=ERC20_EVENTS_ABI,
        start_block=100
    )


@pytest_asyncio.fixture
async def store(fake_redis, logger) -> IndexStore:
    """
    Index store backed by the in-memory Redis.

    Parameters
    ----------
    fake_redis : FakeRedis
        In-memory Redis
    logger : logging.Logger
        Test logger

    Returns
    -------
    IndexStore
        Connected index store
    """
    index_store = IndexStore(fake_redis, logger=logger, prefix="test")
    await index_store.connect()
    return index_store


@pytest.fixture
def normalizer(ledger, logger) -> Normalizer:
    return Normalizer(connection=ledger, logger=logger)
