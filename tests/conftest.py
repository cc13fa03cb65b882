import pytest

from holder_index.abis import TRANSFER_TOPIC, ZERO_ADDRESS
from holder_index.cache import MemoryCacheStore
from holder_index.catalog import CollectionConfig, POOL, Tier
from holder_index.chain import CallResult, ChainReader
from holder_index.errors import ChainReadError, LogRangeTooLargeError
from holder_index.locks import InProcessLock

NFT = "0x" + "11" * 20
VAULT = "0x" + "22" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


def _topic(address):
    return "0x" + "0" * 24 + address[2:].lower()


def transfer_log(block, sender, to, token_id, index=0):
    return {
        "blockNumber": block,
        "logIndex": index,
        "topics": [TRANSFER_TOPIC, _topic(sender), _topic(to), "0x" + format(token_id, "064x")],
    }


def mint_log(block, to, token_id, index=0):
    return transfer_log(block, ZERO_ADDRESS, to, token_id, index)


class FakeChainReader(ChainReader):
    """In-memory chain: a log list, plain contract values and per-function
    handlers for batched calls. Every request is recorded.

    `outages` maps (function, args) to how many more batches containing that
    call fail as a whole, the way an exhausted multicall does.
    """

    def __init__(self, head=0, logs=None):
        self.head = head
        self.logs = list(logs or [])
        self.values = {}
        self.handlers = {}
        self.receipts = {}
        self.outages = {}
        self.log_limit = None
        self.failing_ranges = set()
        self.log_requests = []
        self.batches = []

    def get_head_block(self):
        return self.head

    def get_logs(self, address, topics, from_block, to_block):
        self.log_requests.append((from_block, to_block))
        if (from_block, to_block) in self.failing_ranges:
            raise ChainReadError(f"eth_getLogs {from_block}-{to_block}: failed after 3 attempts")
        found = [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]
        if self.log_limit is not None and len(found) > self.log_limit:
            raise LogRangeTooLargeError("Log response size exceeded.")
        return found

    def read_contract(self, address, abi, function, args=()):
        value = self.values[function]
        if isinstance(value, Exception):
            raise value
        return value

    def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash.lower())

    def batch_call(self, calls):
        self.batches.append(list(calls))
        keys = [(c.function, tuple(tuple(a) if isinstance(a, list) else a for a in c.args)) for c in calls]
        down = [key for key in keys if self.outages.get(key, 0) > 0]
        if down:
            for key in down:
                self.outages[key] -= 1
            error = f"multicall({len(calls)}): failed after 3 attempts: timed out"
            return [CallResult(False, error=error) for _ in calls]

        results = []
        for call in calls:
            handler = self.handlers.get(call.function)
            if handler is None:
                results.append(CallResult(False, error=f"{call.function} reverted", reverted=True))
                continue
            try:
                results.append(CallResult(True, handler(*call.args)))
            except Exception as e:
                results.append(CallResult(False, error=str(e), reverted=True))
        return results

    def calls_to(self, function):
        return [call for batch in self.batches for call in batch if call.function == function]


@pytest.fixture
def collection():
    return CollectionConfig(
        key="testnft",
        name="Test NFT",
        address=NFT,
        vault_address=VAULT,
        deployment_block=100,
        tiers={1: Tier("Common", 10), 2: Tier("Rare", 100)},
        reward_strategy=POOL,
        total_minted=20,
        page_size=2,
    )


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def lock():
    return InProcessLock()


@pytest.fixture
def reader():
    chain = FakeChainReader(head=1000)
    chain.values["totalSupply"] = 0
    # token ids below 10 are Common, the rest Rare
    chain.handlers["getNftTier"] = lambda token_id: 1 if token_id < 10 else 2
    chain.handlers["getRewards"] = lambda token_ids, wallet: ([True] * len(token_ids), len(token_ids) * 10**18)
    return chain
