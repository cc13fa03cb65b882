import pytest

from holder_index.cache import FileCacheStore, MemoryCacheStore, cache_key, make_cache_store
from holder_index.config import Settings
from holder_index.locks import CacheLeaseLock, InProcessLock, make_lock


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture(params=["memory", "file"])
def timed_store(request, tmp_path):
    clock = Clock()
    if request.param == "memory":
        return MemoryCacheStore(clock), clock
    return FileCacheStore(str(tmp_path / "cache"), clock), clock


def test_cache_key():
    assert cache_key("Element280", "holders") == "element280_holders"
    assert cache_key("stax", "events_range", "0xabc", 1, 500) == "stax_events_range_0xabc_1_500"


def test_set_get_delete(timed_store):
    store, _ = timed_store
    store.set("k", {"holders": [1, 2]})

    assert store.get("k") == {"holders": [1, 2]}
    store.delete("k")
    assert store.get("k") is None
    store.delete("k")


def test_entries_expire(timed_store):
    store, clock = timed_store
    store.set("k", {"v": 1}, ttl=60)
    store.set("forever", {"v": 2})

    clock.now += 61

    assert store.get("k") is None
    assert store.get("forever") == {"v": 2}


def test_add_only_when_absent_or_expired(timed_store):
    store, clock = timed_store

    assert store.add("lease", {"owner": "a"}, ttl=10)
    assert not store.add("lease", {"owner": "b"}, ttl=10)
    clock.now += 11
    assert store.add("lease", {"owner": "b"}, ttl=10)
    assert store.get("lease") == {"owner": "b"}


def test_memory_store_hands_out_copies():
    store = MemoryCacheStore()
    value = {"holders": [1]}
    store.set("k", value)
    value["holders"].append(2)

    cached = store.get("k")
    cached["holders"].append(3)
    assert store.get("k") == {"holders": [1]}


def test_make_cache_store(tmp_path):
    assert isinstance(make_cache_store(Settings(cache_backend="memory")), MemoryCacheStore)
    assert isinstance(make_cache_store(Settings(cache_backend="file", cache_dir=str(tmp_path))), FileCacheStore)
    with pytest.raises(ValueError):
        make_cache_store(Settings(cache_backend="redis"))


def test_in_process_lock():
    lock = InProcessLock()

    assert lock.try_acquire("stax")
    assert not lock.try_acquire("stax")
    assert lock.try_acquire("element280")
    lock.release("stax")
    assert lock.try_acquire("stax")
    assert lock.renew("stax")


def test_cache_lease_lock_is_shared_through_the_store():
    store = MemoryCacheStore()
    first, second = CacheLeaseLock(store), CacheLeaseLock(store)

    assert first.try_acquire("stax")
    assert not second.try_acquire("stax")
    second.release("stax")
    assert not second.try_acquire("stax")
    first.release("stax")
    assert second.try_acquire("stax")


def test_make_lock():
    store = MemoryCacheStore()
    assert isinstance(make_lock(Settings(lock_backend="cache"), store), CacheLeaseLock)
    assert isinstance(make_lock(Settings(), store), InProcessLock)


def test_owned_entries_only_change_for_their_owner(timed_store):
    store, clock = timed_store
    store.add("lease", {"owner": "a"}, ttl=10)

    assert not store.delete_owned("lease", "b")
    assert not store.touch_owned("lease", "b", 10)
    clock.now += 8
    assert store.touch_owned("lease", "a", 10)
    clock.now += 8
    assert store.get("lease") == {"owner": "a"}
    assert store.delete_owned("lease", "a")
    assert store.get("lease") is None
    assert not store.delete_owned("lease", "a")


def test_expired_lease_cannot_be_renewed_or_released_over_a_new_holder():
    clock = Clock()
    store = MemoryCacheStore(clock)
    first, second = CacheLeaseLock(store, ttl=10), CacheLeaseLock(store, ttl=10)

    assert first.try_acquire("stax")
    assert first.renew("stax")
    clock.now += 11
    assert second.try_acquire("stax")

    assert not first.renew("stax")
    first.release("stax")
    assert store.get("stax_lock") == {"owner": second.owner}
    assert second.renew("stax")


def test_renewal_keeps_a_long_run_leased():
    clock = Clock()
    store = MemoryCacheStore(clock)
    holder, other = CacheLeaseLock(store, ttl=10), CacheLeaseLock(store, ttl=10)
    holder.try_acquire("stax")

    for _ in range(5):
        clock.now += 6
        assert holder.renew("stax")

    assert not other.try_acquire("stax")
