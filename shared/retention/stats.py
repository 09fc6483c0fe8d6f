import json
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from structlog import get_logger

from shared.db import models
from shared.retention.errors import CleanupError, StorageQueryFailure

log = get_logger()


@dataclass
class CleanupStats:
    canvases_deleted: int = 0
    tiles_deleted: int = 0
    layers_deleted: int = 0
    ogp_images_deleted: int = 0
    orphaned_tiles_deleted: int = 0
    orphaned_ogp_deleted: int = 0
    storage_reclaimed_bytes: int = 0
    total_tiles_before: int = 0
    total_tiles_after: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def record_id_for(started_at: datetime) -> str:
    """``dr_YYYYMMDD_HHMMSS`` from the run's start time (UTC)."""
    return f"dr_{started_at.strftime('%Y%m%d_%H%M%S')}"


def serialize_errors(errors: List[CleanupError]) -> Optional[str]:
    if not errors:
        return None
    return json.dumps([e.to_dict() for e in errors])


class StatsRecorder:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def total_tile_count(self) -> int:
        db = self.session_factory()
        try:
            return int(db.execute(select(func.count()).select_from(models.DrawingTile)).scalar_one() or 0)
        except SQLAlchemyError as e:
            raise StorageQueryFailure(f"tile count query failed: {e}") from e
        finally:
            db.close()

    def record(
        self,
        stats: CleanupStats,
        started_at: datetime,
        duration_ms: int,
        errors: List[CleanupError],
    ) -> str:
        """Insert the run's DeletionRecord and return its id. Never updates an existing row."""
        record_id = record_id_for(started_at)
        row = models.DeletionRecord(
            id=record_id,
            executed_at=started_at,
            errors_encountered=serialize_errors(errors),
            duration_ms=max(0, int(duration_ms)),
            **stats.as_dict(),
        )
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        log.info("deletion_record_written", record_id=record_id, duration_ms=duration_ms, **stats.as_dict())
        return record_id
