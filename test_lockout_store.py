import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from db import Base, SessionLocal
from lockout import (
    LockoutPolicy,
    LockoutSnapshot,
    LockoutState,
    SqlLockoutStore,
    UnsupportedDialect,
    classify,
)

IP = "10.0.0.5"
NOW = datetime(2025, 6, 4, 12, 0, 0)


def _block(store, ip=IP):
    outcome = None
    for _ in range(store.policy.max_attempts):
        outcome = store.record_failure(ip)
    return outcome


# =========================
# classify
# =========================

def test_classify_states():
    assert classify(None, NOW) == LockoutState.ABSENT
    assert classify(LockoutSnapshot(IP, attempt_count=3), NOW) == LockoutState.CLEAR

    blocked = LockoutSnapshot(IP, 10, True, NOW, NOW + timedelta(minutes=10), "x")
    assert classify(blocked, NOW) == LockoutState.BLOCKED
    assert classify(blocked, NOW + timedelta(minutes=11)) == LockoutState.EXPIRED


# =========================
# record_failure
# =========================

def test_first_failure_creates_entry(store):
    assert store.get(IP) is None

    outcome = store.record_failure(IP)

    assert outcome.attempt_count == 1
    assert not outcome.newly_blocked
    assert outcome.blocked_until is None

    entry = store.get(IP)
    assert entry.attempt_count == 1
    assert not entry.is_active
    assert entry.expires_at is None


def test_threshold_blocks_exactly_once(store, clock):
    outcomes = [store.record_failure(IP) for _ in range(10)]

    assert [o.attempt_count for o in outcomes] == list(range(1, 11))
    assert [o.newly_blocked for o in outcomes] == [False] * 9 + [True]
    assert outcomes[-1].blocked_until == clock.now + timedelta(minutes=10)

    entry = store.get(IP)
    assert entry.is_active
    assert entry.blocked_at == clock.now
    assert entry.expires_at == clock.now + timedelta(minutes=10)
    assert entry.reason == "Çok fazla başarısız bearer token denemesi (10 deneme)"

    # Failing again while blocked never reports a second transition
    again = store.record_failure(IP)
    assert again.attempt_count == 11
    assert not again.newly_blocked


def test_custom_policy(clock):
    store = SqlLockoutStore(SessionLocal, LockoutPolicy(max_attempts=3, block_minutes=2), clock)

    assert not store.record_failure(IP).newly_blocked
    assert not store.record_failure(IP).newly_blocked
    outcome = store.record_failure(IP)

    assert outcome.newly_blocked
    assert outcome.blocked_until == clock.now + timedelta(minutes=2)


def test_failure_after_expiry_starts_over(store, clock):
    _block(store)
    clock.advance(minutes=10, seconds=1)

    outcome = store.record_failure(IP)

    assert outcome.attempt_count == 1
    assert not outcome.newly_blocked
    entry = store.get(IP)
    assert not entry.is_active
    assert entry.expires_at is None
    assert entry.reason is None


def test_counters_are_per_ip(store):
    store.record_failure(IP)
    store.record_failure(IP)
    assert store.record_failure("2001:db8::1").attempt_count == 1


# =========================
# check_status
# =========================

def test_check_status_absent_and_clear(store):
    status = store.check_status(IP)
    assert not status.blocked
    assert status.entry is None

    store.record_failure(IP)
    status = store.check_status(IP)
    assert not status.blocked
    assert status.entry.attempt_count == 1


def test_check_status_blocked(store):
    _block(store)

    status = store.check_status(IP)

    assert status.blocked
    assert status.entry.is_active
    assert status.entry.attempt_count == 10


def test_check_status_reclaims_expired_block(store, clock):
    _block(store)
    clock.advance(minutes=11)

    status = store.check_status(IP)

    assert not status.blocked
    entry = store.get(IP)
    assert entry == LockoutSnapshot.cleared(IP)


def test_block_still_active_at_exact_expiry(store, clock):
    _block(store)
    clock.advance(minutes=10)

    assert store.check_status(IP).blocked


def test_reclaim_ignores_unexpired_entries(store):
    _block(store)
    assert not store.reclaim(IP)
    assert store.get(IP).is_active


# =========================
# record_success
# =========================

def test_success_clears_failures(store):
    for _ in range(4):
        store.record_failure(IP)

    store.record_success(IP)

    assert store.get(IP).attempt_count == 0
    assert store.record_failure(IP).attempt_count == 1


def test_success_without_history_creates_nothing(store):
    store.record_success(IP)
    assert store.get(IP) is None


# =========================
# Administrative
# =========================

def test_cleanup_expired_only_touches_expired_blocks(store, clock):
    _block(store, "10.0.0.1")
    clock.advance(minutes=5)
    _block(store, "10.0.0.2")
    store.record_failure("10.0.0.3")

    clock.advance(minutes=6)

    assert store.cleanup_expired() == 1
    assert store.get("10.0.0.1") == LockoutSnapshot.cleared("10.0.0.1")
    assert store.get("10.0.0.2").is_active
    assert store.get("10.0.0.3").attempt_count == 1


def test_clear_history(store):
    _block(store)

    assert store.clear_history(IP)
    assert store.get(IP) == LockoutSnapshot.cleared(IP)
    assert not store.check_status(IP).blocked
    assert not store.clear_history("192.0.2.1")


def test_stats(store, clock):
    _block(store, "10.0.0.1")
    _block(store, "10.0.0.2")
    for _ in range(5):
        store.record_failure("10.0.0.3")
    store.record_failure("10.0.0.4")
    clock.advance(minutes=11)

    stats = store.stats()

    assert stats.total_records == 4
    assert stats.active_blocks == 2
    assert stats.expired_blocks == 2
    assert stats.high_attempt_ips == 3


# =========================
# Concurrency
# =========================

def test_concurrent_failures_block_exactly_once(tmp_path, clock):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lockout.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    Base.metadata.create_all(bind=engine)
    store = SqlLockoutStore(sessionmaker(bind=engine), LockoutPolicy(), clock)
    barrier = threading.Barrier(20)

    def fail(_):
        barrier.wait()
        return store.record_failure(IP)

    try:
        with ThreadPoolExecutor(max_workers=20) as pool:
            outcomes = list(pool.map(fail, range(20)))
        entry = store.get(IP)
    finally:
        engine.dispose()

    assert sorted(o.attempt_count for o in outcomes) == list(range(1, 21))
    newly_blocked = [o for o in outcomes if o.newly_blocked]
    assert len(newly_blocked) == 1
    assert newly_blocked[0].attempt_count == 10
    assert entry.is_active
    assert entry.attempt_count == 20


def test_unsupported_dialect_is_rejected(clock):
    factory = MagicMock()
    transaction = factory.begin.return_value
    transaction.__exit__.return_value = False
    session = transaction.__enter__.return_value
    session.get_bind.return_value.dialect.name = "mysql"
    store = SqlLockoutStore(factory, LockoutPolicy(), clock)

    with pytest.raises(UnsupportedDialect):
        store.record_failure(IP)
