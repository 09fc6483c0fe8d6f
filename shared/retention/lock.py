"""
Singleton cleanup lock backed by the ``cleanup_lock`` table.

The table holds at most one row (``id = 1``, enforced by primary key and a
CHECK constraint), so a competing insert fails with an integrity error instead
of producing a second holder. A row older than the stale threshold is presumed
abandoned by a crashed run and is replaced.
"""

import os
import secrets
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from structlog import get_logger

from shared.db import models
from shared.db.models import utcnow
from shared.retention.errors import LockHeld, StorageQueryFailure

log = get_logger()

LOCK_ROW_ID = 1


def default_holder_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(4)}"


class LockManager:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        stale_after: timedelta = timedelta(minutes=30),
        holder: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.stale_after = stale_after
        self.holder = holder or default_holder_id()
        self.clock = clock

    def acquire(self) -> None:
        """Take the lock or raise LockHeld with the current holder's identity."""
        lock_t = models.CleanupLock
        db = self.session_factory()
        try:
            existing = db.get(lock_t, LOCK_ROW_ID)
            if existing is not None:
                age = self.clock() - existing.locked_at
                if age <= self.stale_after:
                    raise LockHeld(existing.locked_by, existing.locked_at)
                log.warning(
                    "cleanup_lock_stale",
                    holder=existing.locked_by,
                    age_minutes=int(age.total_seconds() // 60),
                )
                # Only remove the row we judged stale; a contender may already have replaced it
                res = db.execute(
                    delete(lock_t).where(
                        lock_t.id == LOCK_ROW_ID,
                        lock_t.locked_at == existing.locked_at,
                        lock_t.locked_by == existing.locked_by,
                    )
                )
                db.commit()
                if res.rowcount == 0:
                    current = db.get(lock_t, LOCK_ROW_ID, populate_existing=True)
                    if current is not None:
                        raise LockHeld(current.locked_by, current.locked_at)

            db.add(lock_t(id=LOCK_ROW_ID, locked_at=self.clock(), locked_by=self.holder))
            try:
                db.commit()
            except IntegrityError:
                # Lost the race to a concurrent insert; report the winner
                db.rollback()
                winner = db.get(lock_t, LOCK_ROW_ID, populate_existing=True)
                if winner is None:
                    raise StorageQueryFailure("cleanup lock insert conflicted but no holder row exists")
                raise LockHeld(winner.locked_by, winner.locked_at)
            log.info("cleanup_lock_acquired", holder=self.holder)
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageQueryFailure(f"cleanup lock query failed: {e}") from e
        finally:
            db.close()

    def release(self) -> None:
        """Delete the lock row. Idempotent; failures are logged, never raised."""
        db = self.session_factory()
        try:
            db.execute(delete(models.CleanupLock).where(models.CleanupLock.id == LOCK_ROW_ID))
            db.commit()
            log.info("cleanup_lock_released", holder=self.holder)
        except Exception:
            db.rollback()
            log.exception("cleanup_lock_release_failed", holder=self.holder)
        finally:
            db.close()

    @contextmanager
    def hold(self) -> Iterator["LockManager"]:
        """Scoped acquisition: released on every exit path once acquired."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()
