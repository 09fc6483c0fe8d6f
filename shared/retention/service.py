"""
Cleanup orchestration.

``execute_cleanup`` is the single entry point used by the Celery beat task,
the admin API and the CLI script:

    lock -> tile count before -> eligible canvases (capped) -> orphans
         -> tile count after -> deletion_record -> unlock

``LockHeld`` is raised to the caller untouched (skip this run, nothing to
release). Any other failure that stops the run is returned as
``CleanupResult(success=False)`` with no audit record; the lock is released in
every case where it was taken.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from structlog import get_logger
from structlog.contextvars import bound_contextvars

from shared.config.settings import Settings, settings as default_settings
from shared.db.models import utcnow
from shared.retention.errors import CleanupError, ErrorKind, StorageQueryFailure
from shared.retention.executor import CanvasDeletionFailed, DeletionExecutor, DeletionOutcome
from shared.retention.lock import LockManager
from shared.retention.orphans import OrphanReconciler
from shared.retention.scanner import EligibilityScanner
from shared.retention.stats import CleanupStats, StatsRecorder, record_id_for

log = get_logger()


@dataclass
class CleanupContext:
    session_factory: Callable[[], Session]
    storage: Any
    settings: Settings = field(default_factory=lambda: default_settings)
    clock: Callable[[], datetime] = utcnow
    holder: Optional[str] = None


@dataclass
class CleanupResult:
    success: bool
    deletion_record_id: Optional[str]
    canvases_processed: int
    error_details: List[CleanupError] = field(default_factory=list)
    stats: Optional[CleanupStats] = None

    @property
    def errors(self) -> List[str]:
        return [str(e) for e in self.error_details]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "deletion_record_id": self.deletion_record_id,
            "canvases_processed": self.canvases_processed,
            "errors": self.errors,
            "stats": self.stats.as_dict() if self.stats else None,
        }


def _blob_errors(keys: List[str], canvas_id: Optional[str] = None) -> List[CleanupError]:
    return [
        CleanupError(ErrorKind.blob_delete, f"failed to delete object {k} after retry", canvas_id)
        for k in keys
    ]


class CleanupService:
    def __init__(self, ctx: CleanupContext):
        self.ctx = ctx
        s = ctx.settings
        self.lock = LockManager(
            ctx.session_factory,
            stale_after=timedelta(minutes=s.stale_lock_minutes),
            holder=ctx.holder or s.cleanup_lock_holder,
            clock=ctx.clock,
        )
        self.scanner = EligibilityScanner(
            ctx.session_factory,
            retention=timedelta(days=s.retention_days),
            page_size=s.cleanup_page_size,
            clock=ctx.clock,
        )
        self.executor = DeletionExecutor(ctx.session_factory, ctx.storage)
        self.reconciler = OrphanReconciler(
            ctx.session_factory, ctx.storage, ogp_prefix=s.ogp_prefix, tile_prefix=s.tile_prefix
        )
        self.recorder = StatsRecorder(ctx.session_factory)
        self.safety_cap = s.cleanup_safety_cap

    def execute(self) -> CleanupResult:
        started_at = self.ctx.clock()
        with bound_contextvars(cleanup_run=record_id_for(started_at)):
            try:
                with self.lock.hold():
                    return self._run(started_at)
            except StorageQueryFailure as e:
                # Raised by acquire(); the lock was never taken, so nothing to release
                log.error("cleanup_lock_unavailable", error=str(e))
                return CleanupResult(False, None, 0, [CleanupError(ErrorKind.storage_query, str(e))], CleanupStats())

    def _run(self, started_at: datetime) -> CleanupResult:
        t0 = time.perf_counter()
        stats = CleanupStats()
        errors: List[CleanupError] = []

        log.info("cleanup_started", holder=self.lock.holder, safety_cap=self.safety_cap)
        try:
            stats.total_tiles_before = self.recorder.total_tile_count()
            self.cleanup_unused_canvases(stats, errors)

            orphans = self.reconciler.reconcile()
            stats.orphaned_tiles_deleted = orphans.orphaned_tiles
            stats.orphaned_ogp_deleted = orphans.orphaned_ogp
            stats.storage_reclaimed_bytes += orphans.bytes_reclaimed
            errors.extend(_blob_errors(orphans.failed_blob_keys))
            errors.extend(CleanupError(ErrorKind.blob_list, msg) for msg in orphans.list_failures)

            stats.total_tiles_after = self.recorder.total_tile_count()
        except StorageQueryFailure as e:
            log.error("cleanup_aborted", error=str(e), canvases_deleted=stats.canvases_deleted)
            errors.append(CleanupError(ErrorKind.storage_query, str(e)))
            return CleanupResult(False, None, stats.canvases_deleted, errors, stats)
        except Exception as e:
            log.exception("cleanup_failed", error_type=type(e).__name__)
            errors.append(CleanupError(ErrorKind.internal, f"{type(e).__name__}: {e}"))
            return CleanupResult(False, None, stats.canvases_deleted, errors, stats)

        duration_ms = int((time.perf_counter() - t0) * 1000)
        try:
            record_id = self.recorder.record(stats, started_at, duration_ms, errors)
        except SQLAlchemyError as e:
            log.exception("deletion_record_write_failed")
            errors.append(CleanupError(ErrorKind.audit_write, str(e)))
            return CleanupResult(False, None, stats.canvases_deleted, errors, stats)

        log.info(
            "cleanup_finished",
            record_id=record_id,
            duration_ms=duration_ms,
            errors=len(errors),
        )
        return CleanupResult(True, record_id, stats.canvases_deleted, errors, stats)

    def cleanup_unused_canvases(self, stats: CleanupStats, errors: List[CleanupError]) -> None:
        """Delete eligible canvases one at a time until exhausted or the safety cap is hit."""
        for page in self.scanner.pages():
            for canvas in page:
                if stats.canvases_deleted >= self.safety_cap:
                    break
                try:
                    outcome = self.executor.delete_canvas(canvas)
                except CanvasDeletionFailed as e:
                    log.error("canvas_delete_failed", canvas_id=canvas.id, error=str(e))
                    self._apply(stats, e.outcome)
                    errors.append(CleanupError(ErrorKind.container_delete, str(e), canvas.id))
                    errors.extend(_blob_errors(e.outcome.failed_blob_keys, canvas.id))
                    continue
                self._apply(stats, outcome)
                errors.extend(_blob_errors(outcome.failed_blob_keys, canvas.id))
                stats.canvases_deleted += 1
                # Cascaded layer rows are not counted; a canvas that had tiles counts as one
                stats.layers_deleted += 1 if canvas.tile_count > 0 else 0
            if stats.canvases_deleted >= self.safety_cap:
                log.warning("cleanup_safety_cap_reached", cap=self.safety_cap)
                return

    @staticmethod
    def _apply(stats: CleanupStats, outcome: DeletionOutcome) -> None:
        stats.tiles_deleted += outcome.tiles_deleted
        stats.storage_reclaimed_bytes += outcome.bytes_reclaimed
        if outcome.preview_deleted:
            stats.ogp_images_deleted += 1


def execute_cleanup(ctx: CleanupContext) -> CleanupResult:
    return CleanupService(ctx).execute()
