from datetime import timedelta

import pytest

from shared.db import models
from shared.db.models import utcnow
from shared.retention.errors import LockHeld
from shared.retention.lock import LockManager


def _lock_row(session_factory):
    db = session_factory()
    try:
        return db.get(models.CleanupLock, 1)
    finally:
        db.close()


def test_acquire_inserts_singleton_row(session_factory):
    lm = LockManager(session_factory, holder="worker-a")
    lm.acquire()
    row = _lock_row(session_factory)
    assert row is not None
    assert row.locked_by == "worker-a"


def test_second_acquire_gets_lock_held_with_first_holder(session_factory):
    first = LockManager(session_factory, holder="worker-a")
    second = LockManager(session_factory, holder="worker-b")
    first.acquire()
    with pytest.raises(LockHeld) as ei:
        second.acquire()
    assert ei.value.holder == "worker-a"
    assert ei.value.held_at == _lock_row(session_factory).locked_at
    # the loser must not have replaced the row
    assert _lock_row(session_factory).locked_by == "worker-a"


def test_insert_race_reports_winner(session_factory):
    first = LockManager(session_factory, holder="worker-a")
    first.acquire()

    # Second contender reads "no lock" (stale read), then loses on insert
    def racing_factory():
        db = session_factory()
        real_get = db.get
        calls = {"n": 0}

        def get(model, key, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_get(model, key, **kwargs)

        db.get = get
        return db

    second = LockManager(racing_factory, holder="worker-b")
    with pytest.raises(LockHeld) as ei:
        second.acquire()
    assert ei.value.holder == "worker-a"


def test_stale_lock_is_replaced(session_factory):
    db = session_factory()
    db.add(models.CleanupLock(id=1, locked_at=utcnow() - timedelta(minutes=31), locked_by="stale-worker"))
    db.commit()
    db.close()

    lm = LockManager(session_factory, stale_after=timedelta(minutes=30), holder="worker-new")
    lm.acquire()
    assert _lock_row(session_factory).locked_by == "worker-new"


def test_lock_just_under_threshold_is_held(session_factory):
    db = session_factory()
    db.add(models.CleanupLock(id=1, locked_at=utcnow() - timedelta(minutes=29), locked_by="busy-worker"))
    db.commit()
    db.close()

    with pytest.raises(LockHeld):
        LockManager(session_factory, holder="worker-new").acquire()


def test_release_is_idempotent(session_factory):
    lm = LockManager(session_factory, holder="worker-a")
    lm.acquire()
    lm.release()
    lm.release()
    assert _lock_row(session_factory) is None


def test_release_failure_is_not_raised():
    class BrokenSession:
        def execute(self, *a, **kw):
            raise RuntimeError("db gone")

        def rollback(self):
            return None

        def close(self):
            return None

    LockManager(lambda: BrokenSession(), holder="worker-a").release()


def test_hold_releases_on_exception(session_factory):
    lm = LockManager(session_factory, holder="worker-a")
    with pytest.raises(ValueError):
        with lm.hold():
            assert _lock_row(session_factory) is not None
            raise ValueError("boom")
    assert _lock_row(session_factory) is None


def test_hold_does_not_release_someone_elses_lock(session_factory):
    LockManager(session_factory, holder="worker-a").acquire()
    contender = LockManager(session_factory, holder="worker-b")
    with pytest.raises(LockHeld):
        with contender.hold():
            pass  # pragma: no cover
    assert _lock_row(session_factory).locked_by == "worker-a"


def test_stale_takeover_does_not_remove_a_fresh_lock(session_factory):
    db = session_factory()
    db.add(models.CleanupLock(id=1, locked_at=utcnow() - timedelta(minutes=45), locked_by="crashed-worker"))
    db.commit()
    db.close()

    winner = LockManager(session_factory, holder="worker-b")

    # worker-a reads the stale row, then worker-b takes the lock over before
    # worker-a gets to delete it
    def slow_factory():
        db = session_factory()
        real_get = db.get
        calls = {"n": 0}

        def get(model, key, **kwargs):
            calls["n"] += 1
            row = real_get(model, key, **kwargs)
            if calls["n"] == 1:
                winner.acquire()
            return row

        db.get = get
        return db

    loser = LockManager(slow_factory, holder="worker-a")
    with pytest.raises(LockHeld) as ei:
        loser.acquire()

    assert ei.value.holder == "worker-b"
    assert _lock_row(session_factory).locked_by == "worker-b"


def test_staleness_measured_with_injected_clock(session_factory):
    db = session_factory()
    db.add(models.CleanupLock(id=1, locked_at=utcnow(), locked_by="busy-worker"))
    db.commit()
    db.close()

    later = utcnow() + timedelta(hours=2)
    lm = LockManager(session_factory, holder="worker-new", clock=lambda: later)
    lm.acquire()

    row = _lock_row(session_factory)
    assert row.locked_by == "worker-new"
    assert row.locked_at == later
