import json
import threading

import pytest

from feedsync.services.sync_lock import GEMINI, PROMIDATA, SyncLockService, lock_key, stop_key

from conftest import FakeKeyValueStore


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture()
def locks(kv):
    return SyncLockService(kv, lock_ttl=60, stop_ttl=30, cache_ttl=0, instance_id="test-1")


def test_only_one_holder(locks):
    first = locks.acquire(PROMIDATA, "A113")
    assert first
    assert locks.acquire(PROMIDATA, "A113") is None
    assert locks.acquire(PROMIDATA, "B200")
    assert locks.acquire(GEMINI, "A113")
    info = locks.get_lock_info(PROMIDATA, "A113")
    assert info["syncId"] == first
    assert info["lockedBy"] == "test-1"


def test_release_only_by_current_holder(locks):
    sync_id = locks.acquire(PROMIDATA, "A113")
    assert not locks.release(PROMIDATA, "A113", "someone-else")
    assert locks.is_locked(PROMIDATA, "A113")
    assert locks.release(PROMIDATA, "A113", sync_id)
    assert not locks.is_locked(PROMIDATA, "A113")
    assert locks.acquire(PROMIDATA, "A113")


def test_lock_expires_after_ttl():
    clock = Clock()
    locks = SyncLockService(FakeKeyValueStore(clock=clock), lock_ttl=60, cache_ttl=0)
    assert locks.acquire(PROMIDATA, "A113")
    clock.now += 61
    assert not locks.is_locked(PROMIDATA, "A113")
    assert locks.acquire(PROMIDATA, "A113")


def test_stop_needs_a_running_sync(locks, kv):
    assert not locks.request_stop(PROMIDATA, "A113")
    assert not locks.is_stop_requested(PROMIDATA, "A113")

    sync_id = locks.acquire(PROMIDATA, "A113")
    assert locks.request_stop(PROMIDATA, "A113")
    assert locks.is_stop_requested(PROMIDATA, "A113")
    assert kv.ttl(stop_key(PROMIDATA, "A113")) <= 30
    assert locks.status(PROMIDATA, "A113")["stopRequested"]

    locks.release(PROMIDATA, "A113", sync_id)
    assert not locks.is_stop_requested(PROMIDATA, "A113")


def test_active_syncs_and_force_release(locks, kv):
    locks.acquire(PROMIDATA, "A113")
    locks.acquire(GEMINI, "all")
    active = locks.get_all_active_syncs()
    assert [e["scope"] for e in active[PROMIDATA]] == ["A113"]
    assert [e["scope"] for e in active[GEMINI]] == ["all"]

    locks.request_stop(PROMIDATA, "A113")
    assert locks.force_release_all_locks() == 3
    assert locks.get_all_active_syncs() == {PROMIDATA: [], GEMINI: []}


def test_unreadable_lock_value(locks, kv):
    kv.set(lock_key(PROMIDATA, "A113"), "not json")
    assert locks.get_lock_info(PROMIDATA, "A113") == {"raw": "not json"}
    kv.set(lock_key(PROMIDATA, "B200"), json.dumps({"syncId": "x"}))
    assert locks.status(PROMIDATA, "B200")["isRunning"]


def test_competing_acquirers_get_one_lock(kv):
    services = [SyncLockService(kv, cache_ttl=0, instance_id=f"worker-{n}") for n in range(8)]
    barrier = threading.Barrier(len(services))
    won = []

    def contend(locks):
        barrier.wait()
        won.append(locks.acquire(PROMIDATA, "A113"))

    threads = [threading.Thread(target=contend, args=(s,)) for s in services]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [w for w in won if w]
    assert len(won) == 8
    assert len(winners) == 1
    assert services[0].get_lock_info(PROMIDATA, "A113")["syncId"] == winners[0]


def test_expired_holder_cannot_release_the_next_lock():
    clock = Clock()
    kv = FakeKeyValueStore(clock=clock)
    locks = SyncLockService(kv, lock_ttl=60, cache_ttl=0)
    stale = locks.acquire(PROMIDATA, "A113")
    clock.now += 61
    current = locks.acquire(PROMIDATA, "A113")

    assert not locks.release(PROMIDATA, "A113", stale)
    assert locks.get_lock_info(PROMIDATA, "A113")["syncId"] == current
    assert locks.release(PROMIDATA, "A113", current)
    assert not locks.is_locked(PROMIDATA, "A113")


def test_unreadable_lock_is_not_released_by_id(locks, kv):
    kv.set(lock_key(PROMIDATA, "A113"), "not json")
    assert not locks.release(PROMIDATA, "A113", "any-id")
    assert locks.is_locked(PROMIDATA, "A113")
    assert locks.release(PROMIDATA, "A113")
