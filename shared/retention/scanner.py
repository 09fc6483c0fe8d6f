from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from structlog import get_logger

from shared.db import models
from shared.db.models import utcnow
from shared.retention.errors import StorageQueryFailure

log = get_logger()


@dataclass(frozen=True)
class EligibleCanvas:
    id: str
    tile_count: int
    ogp_image_key: Optional[str]


def eligibility_predicate(cutoff: datetime):
    """(empty OR unshared) AND created at or before cutoff."""
    c = models.Canvas
    unshared = and_(c.share_lat.is_(None), c.share_lng.is_(None), c.share_zoom.is_(None))
    return and_(or_(c.tile_count == 0, unshared), c.created_at <= cutoff)


class EligibilityScanner:
    """Pages through canvases that satisfy the retention predicate.

    Pages are keyed on the primary key (``id > last_seen ORDER BY id``) rather
    than an offset, so deleting rows between pages never shifts later rows out
    of view, and a canvas that failed to delete is not fetched again in the
    same run.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        retention: timedelta = timedelta(days=30),
        page_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.session_factory = session_factory
        self.retention = retention
        self.page_size = page_size
        self.clock = clock

    def cutoff(self) -> datetime:
        return self.clock() - self.retention

    def fetch_page(self, cutoff: datetime, after_id: Optional[str] = None) -> List[EligibleCanvas]:
        c = models.Canvas
        stmt = select(c.id, c.tile_count, c.ogp_image_key).where(eligibility_predicate(cutoff))
        if after_id is not None:
            stmt = stmt.where(c.id > after_id)
        stmt = stmt.order_by(c.id).limit(self.page_size)
        db = self.session_factory()
        try:
            rows = db.execute(stmt).all()
        except SQLAlchemyError as e:
            raise StorageQueryFailure(f"eligibility scan failed: {e}") from e
        finally:
            db.close()
        return [EligibleCanvas(id=r.id, tile_count=r.tile_count or 0, ogp_image_key=r.ogp_image_key) for r in rows]

    def pages(self) -> Iterator[List[EligibleCanvas]]:
        """Yield non-empty pages until the eligible set is exhausted."""
        cutoff = self.cutoff()
        after_id = None
        page_no = 0
        while True:
            page = self.fetch_page(cutoff, after_id)
            if not page:
                log.info("eligibility_scan_exhausted", pages=page_no, cutoff=cutoff.isoformat())
                return
            page_no += 1
            log.info("eligibility_page", page=page_no, size=len(page))
            yield page
            after_id = page[-1].id
