from dataclasses import dataclass, field
from typing import Callable, List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from structlog import get_logger

from shared.db import models
from shared.retention.retry import delete_with_retry
from shared.retention.scanner import EligibleCanvas

log = get_logger()


@dataclass
class DeletionOutcome:
    tiles_deleted: int = 0
    preview_deleted: bool = False
    bytes_reclaimed: int = 0
    failed_blob_keys: List[str] = field(default_factory=list)


class CanvasDeletionFailed(Exception):
    """A step failed part-way; ``outcome`` holds what was already removed."""

    def __init__(self, canvas_id: str, outcome: DeletionOutcome, cause: Exception):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.canvas_id = canvas_id
        self.outcome = outcome


class DeletionExecutor:
    """Removes one canvas and everything hanging off it, rows first, canvas row last.

    Each step commits on its own. If a step fails the earlier steps stay done:
    a canvas that lost its tiles but kept its row is still eligible (now empty)
    on the next run, and blobs whose rows are gone are swept by the orphan pass.
    """

    def __init__(self, session_factory: Callable[[], Session], storage):
        self.session_factory = session_factory
        self.storage = storage

    def _blob_size(self, key: str) -> int:
        try:
            return self.storage.head(key) or 0
        except Exception as e:
            # Size only feeds the reclaimed-bytes stat; the delete is still attempted
            log.warning("blob_head_failed", key=key, error=str(e))
            return 0

    def _delete_blob(self, key: str, outcome: DeletionOutcome) -> bool:
        size = self._blob_size(key)
        if delete_with_retry(self.storage, key):
            outcome.bytes_reclaimed += size
            return True
        outcome.failed_blob_keys.append(key)
        return False

    def delete_canvas(self, canvas: EligibleCanvas) -> DeletionOutcome:
        outcome = DeletionOutcome()
        tile_t = models.DrawingTile
        canvas_t = models.Canvas
        db = self.session_factory()
        try:
            # 1. tile rows for this canvas
            tiles = db.execute(
                select(tile_t.id, tile_t.r2_key).where(tile_t.canvas_id == canvas.id)
            ).all()

            # 2. drop tile rows in one statement, regardless of blob outcome
            if tiles:
                res = db.execute(delete(tile_t).where(tile_t.canvas_id == canvas.id))
                db.commit()
                outcome.tiles_deleted = res.rowcount if res.rowcount is not None and res.rowcount >= 0 else len(tiles)

            # 3. tile blobs
            for tile in tiles:
                self._delete_blob(tile.r2_key, outcome)

            # 4. preview blob, read fresh in case it was regenerated since the scan
            ogp_key = db.execute(
                select(canvas_t.ogp_image_key).where(canvas_t.id == canvas.id)
            ).scalar_one_or_none()
            if ogp_key:
                outcome.preview_deleted = self._delete_blob(ogp_key, outcome)

            # 5. canvas row; layers go with it via ON DELETE CASCADE
            db.execute(delete(canvas_t).where(canvas_t.id == canvas.id))
            db.commit()
        except Exception as e:
            db.rollback()
            raise CanvasDeletionFailed(canvas.id, outcome, e) from e
        finally:
            db.close()

        log.info(
            "canvas_deleted",
            canvas_id=canvas.id,
            tiles_deleted=outcome.tiles_deleted,
            preview_deleted=outcome.preview_deleted,
            bytes_reclaimed=outcome.bytes_reclaimed,
            blob_failures=len(outcome.failed_blob_keys),
        )
        return outcome
