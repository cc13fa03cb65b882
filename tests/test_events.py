import pytest

from conftest import ALICE, BOB, FakeChainReader, mint_log, transfer_log
from holder_index.abis import DEAD_ADDRESS
from holder_index.errors import ChainReadError, LogRangeTooLargeError
from holder_index.events import EventSyncEngine, FastForwardPolicy, decode_transfer, split_windows
from holder_index.models import BURN, TRANSFER, Checkpoint


def engine(collection, reader, store, **kwargs):
    kwargs.setdefault("fast_forward", FastForwardPolicy(enabled=False))
    return EventSyncEngine(collection, reader, store, **kwargs)


def test_split_windows():
    assert split_windows(1001, 1600, 500) == [(1001, 1500), (1501, 1600)]
    assert split_windows(5, 5, 500) == [(5, 5)]
    assert split_windows(6, 5, 500) == []


def test_decode_transfer_classifies_burns(collection):
    burn = decode_transfer(transfer_log(10, ALICE, DEAD_ADDRESS, 7), collection)
    mint = decode_transfer(mint_log(11, BOB, 8), collection)

    assert (burn.kind, burn.token_id, burn.sender) == (BURN, 7, ALICE)
    assert (mint.kind, mint.token_id, mint.to, mint.block) == (TRANSFER, 8, BOB, 11)


def test_sync_walks_exactly_the_target_windows(collection, store):
    reader = FakeChainReader(head=1600, logs=[mint_log(1200, ALICE, 1), transfer_log(1550, ALICE, BOB, 1)])

    deltas, checkpoint = engine(collection, reader, store).sync(Checkpoint(1000), head=1600)

    assert sorted(reader.log_requests) == [(1001, 1500), (1501, 1600)]
    assert [(d.token_id, d.to) for d in deltas] == [(1, ALICE), (1, BOB)]
    assert checkpoint.last_processed_block == 1600


def test_sync_caps_blocks_per_call(collection, store):
    reader = FakeChainReader(head=10_000)

    _, checkpoint = engine(collection, reader, store, max_blocks=1000).sync(Checkpoint(0), head=10_000)

    assert checkpoint.last_processed_block == 1099
    assert max(b for _, b in reader.log_requests) == 1099


def test_sync_starts_at_the_deployment_block(collection, store):
    reader = FakeChainReader(head=1000, logs=[mint_log(100, ALICE, 1)])

    deltas, checkpoint = engine(collection, reader, store).sync(Checkpoint(0), head=1000)

    assert sorted(reader.log_requests) == [(100, 599), (600, 1000)]
    assert [d.token_id for d in deltas] == [1]
    assert checkpoint.last_processed_block == 1000


def test_sync_before_deployment_reads_nothing(collection, store):
    reader = FakeChainReader(head=90)

    deltas, checkpoint = engine(collection, reader, store).sync(Checkpoint(0), head=90)

    assert deltas == []
    assert checkpoint.last_processed_block == 0
    assert reader.log_requests == []


def test_sync_without_new_blocks_keeps_checkpoint(collection, store):
    reader = FakeChainReader(head=500)

    deltas, checkpoint = engine(collection, reader, store).sync(Checkpoint(500, 1), head=500)

    assert deltas == []
    assert checkpoint.last_processed_block == 500
    assert checkpoint.last_updated > 1
    assert reader.log_requests == []


def test_cached_windows_are_not_fetched_again(collection, store):
    reader = FakeChainReader(head=1600, logs=[mint_log(1200, ALICE, 1)])
    sync = engine(collection, reader, store)
    sync.sync(Checkpoint(1000), head=1600)
    reader.log_requests.clear()

    deltas, _ = sync.sync(Checkpoint(1000), head=1600)

    assert reader.log_requests == []
    assert [d.token_id for d in deltas] == [1]


def test_failed_window_aborts_but_keeps_fetched_windows(collection, store):
    reader = FakeChainReader(head=1600, logs=[mint_log(1200, ALICE, 1)])
    reader.failing_ranges.add((1501, 1600))
    sync = engine(collection, reader, store, concurrency=1)
    error_log = []

    with pytest.raises(ChainReadError):
        sync.sync(Checkpoint(1000), head=1600, error_log=error_log)
    assert error_log[0]["phase"] == "fetch_events"
    assert (error_log[0]["fromBlock"], error_log[0]["toBlock"]) == (1501, 1600)

    reader.failing_ranges.clear()
    reader.log_requests.clear()
    deltas, _ = sync.sync(Checkpoint(1000), head=1600)
    assert reader.log_requests == [(1501, 1600)]
    assert [d.token_id for d in deltas] == [1]


def test_oversized_window_is_narrowed(collection, store):
    logs = [mint_log(1001 + i * 50, ALICE, i + 1) for i in range(10)]
    reader = FakeChainReader(head=1500, logs=logs)
    reader.log_limit = 3

    deltas, _ = engine(collection, reader, store).sync(Checkpoint(1000), head=1500)

    assert [d.token_id for d in deltas] == list(range(1, 11))
    assert reader.log_requests[0] == (1001, 1500)
    assert len(reader.log_requests) > 1


def test_narrow_uses_suggested_range():
    error = LogRangeTooLargeError("too big", suggested=(100, 150))

    assert EventSyncEngine._narrow(error, 100, 600) == 150
    assert EventSyncEngine._narrow(LogRangeTooLargeError("too big"), 100, 600) == 350
    with pytest.raises(ChainReadError):
        EventSyncEngine._narrow(LogRangeTooLargeError("too big"), 100, 100)


def test_fast_forward_skips_quiet_ranges(collection, store):
    reader = FakeChainReader(head=200_000)
    policy = FastForwardPolicy(enabled=True, probe_span=50_000)
    sync = engine(collection, reader, store, max_blocks=200_000, window_size=50_000, fast_forward=policy)

    _, checkpoint = sync.sync(Checkpoint(0), head=200_000)

    assert reader.log_requests[0] == (150_001, 200_000)
    assert min(a for a, _ in reader.log_requests) == 150_001
    assert checkpoint.last_processed_block == 200_000


def test_fast_forward_scans_everything_when_recent_blocks_have_events(collection, store):
    reader = FakeChainReader(head=200_000, logs=[mint_log(190_000, ALICE, 1), mint_log(150, BOB, 2)])
    policy = FastForwardPolicy(enabled=True, probe_span=50_000)
    sync = engine(collection, reader, store, max_blocks=200_000, window_size=50_000, fast_forward=policy)

    deltas, _ = sync.sync(Checkpoint(0), head=200_000)

    assert [d.token_id for d in deltas] == [2, 1]


def test_default_policy_scans_a_capped_range_in_full(collection, store):
    reader = FakeChainReader(head=200_000)
    sync = engine(collection, reader, store, max_blocks=50_000, window_size=50_000, fast_forward=FastForwardPolicy())

    _, checkpoint = sync.sync(Checkpoint(100_000), head=200_000)

    assert reader.log_requests == [(100_001, 150_000)]
    assert checkpoint.last_processed_block == 150_000
