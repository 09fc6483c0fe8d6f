"""
Orphan reconciliation between the metadata store and the blob store.

Class A: ``drawing_tile`` rows whose canvas no longer exists (left join on
``canvas`` comes back NULL). Rows go in one statement, then their blobs.

Class B: objects in the bucket that nothing references. Keys under the OGP
prefix are checked against ``canvas.ogp_image_key``; every other key under the
tile prefix is checked against ``drawing_tile.r2_key``. This is also how a
tile blob that failed both delete attempts after its row was dropped gets
reclaimed on a later run.

The bucket is listed before the referenced keys are read, so an object whose
row is committed while the listing is in flight shows up as referenced and is
kept.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from structlog import get_logger

from shared.db import models
from shared.retention.errors import StorageQueryFailure
from shared.retention.retry import delete_with_retry

log = get_logger()


@dataclass
class OrphanStats:
    orphaned_tiles: int = 0
    orphaned_ogp: int = 0
    orphaned_tile_blobs: int = 0
    bytes_reclaimed: int = 0
    failed_blob_keys: List[str] = field(default_factory=list)
    list_failures: List[str] = field(default_factory=list)


class OrphanReconciler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        storage,
        ogp_prefix: str = "ogp/",
        tile_prefix: str = "",
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.ogp_prefix = ogp_prefix
        self.tile_prefix = tile_prefix

    def reconcile(self) -> OrphanStats:
        stats = OrphanStats()
        self.cleanup_orphaned_tiles(stats)
        self.cleanup_unreferenced_blobs(stats)
        log.info(
            "orphan_reconcile_done",
            orphaned_tiles=stats.orphaned_tiles,
            orphaned_ogp=stats.orphaned_ogp,
            orphaned_tile_blobs=stats.orphaned_tile_blobs,
            blob_failures=len(stats.failed_blob_keys),
            list_failures=len(stats.list_failures),
        )
        return stats

    def cleanup_orphaned_tiles(self, stats: OrphanStats) -> None:
        tile_t = models.DrawingTile
        canvas_t = models.Canvas
        db = self.session_factory()
        try:
            orphans = db.execute(
                select(tile_t.id, tile_t.r2_key)
                .outerjoin(canvas_t, tile_t.canvas_id == canvas_t.id)
                .where(canvas_t.id.is_(None))
            ).all()
            if not orphans:
                return
            res = db.execute(delete(tile_t).where(tile_t.id.in_([t.id for t in orphans])))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageQueryFailure(f"orphaned tile query failed: {e}") from e
        finally:
            db.close()

        stats.orphaned_tiles = res.rowcount if res.rowcount is not None and res.rowcount >= 0 else len(orphans)
        log.info("orphaned_tile_rows_deleted", count=stats.orphaned_tiles)
        for tile in orphans:
            if not delete_with_retry(self.storage, tile.r2_key):
                stats.failed_blob_keys.append(tile.r2_key)

    def _list(self, prefix: str, stats: OrphanStats) -> list:
        try:
            return list(self.storage.list(prefix))
        except Exception as e:
            # Nothing is deleted for this prefix; the next run lists it again
            log.exception("blob_list_failed", prefix=prefix)
            stats.list_failures.append(f"listing {prefix or '<bucket>'} failed: {type(e).__name__}: {e}")
            return []

    def _referenced_keys(self) -> Set[str]:
        canvas_t = models.Canvas
        tile_t = models.DrawingTile
        db = self.session_factory()
        try:
            referenced = set(
                db.execute(select(canvas_t.ogp_image_key).where(canvas_t.ogp_image_key.is_not(None))).scalars()
            )
            referenced.update(db.execute(select(tile_t.r2_key)).scalars())
            return referenced
        except SQLAlchemyError as e:
            raise StorageQueryFailure(f"blob reference query failed: {e}") from e
        finally:
            db.close()

    def cleanup_unreferenced_blobs(self, stats: OrphanStats) -> None:
        previews = self._list(self.ogp_prefix, stats)
        tiles = [b for b in self._list(self.tile_prefix, stats) if not b.key.startswith(self.ogp_prefix)]
        if not previews and not tiles:
            return

        referenced = self._referenced_keys()
        for blob in previews:
            if blob.key in referenced:
                continue
            if delete_with_retry(self.storage, blob.key):
                stats.orphaned_ogp += 1
                stats.bytes_reclaimed += blob.size
            else:
                stats.failed_blob_keys.append(blob.key)
        for blob in tiles:
            if blob.key in referenced:
                continue
            if delete_with_retry(self.storage, blob.key):
                stats.orphaned_tile_blobs += 1
                stats.bytes_reclaimed += blob.size
            else:
                stats.failed_blob_keys.append(blob.key)
