from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger, Column, String, Integer, Float, DateTime, ForeignKey, Boolean, Text,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Canvas(Base):
    __tablename__ = "canvas"
    id = Column(String, primary_key=True)
    center_lat = Column(Float, nullable=False)
    center_lng = Column(Float, nullable=False)
    zoom = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    tile_count = Column(Integer, default=0, nullable=False)
    # Share state is written all-or-nothing by the share endpoint
    share_lat = Column(Float, nullable=True)
    share_lng = Column(Float, nullable=True)
    share_zoom = Column(Integer, nullable=True)
    ogp_image_key = Column(String, nullable=True)  # preview object key within bucket
    ogp_place_name = Column(String, nullable=True)
    ogp_generated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("tile_count >= 0", name="ck_canvas_tile_count"),
        Index("ix_canvas_created_at", "created_at"),
    )


class Layer(Base):
    __tablename__ = "layer"
    id = Column(String, primary_key=True)
    canvas_id = Column(String, ForeignKey("canvas.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    order = Column(Integer, nullable=False)
    visible = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("canvas_id", "order", name="uq_layer_canvas_order"),)


class DrawingTile(Base):
    __tablename__ = "drawing_tile"
    id = Column(String, primary_key=True)
    canvas_id = Column(String, ForeignKey("canvas.id", ondelete="CASCADE"), nullable=False, index=True)
    layer_id = Column(String, ForeignKey("layer.id", ondelete="CASCADE"), nullable=True, index=True)
    z = Column(Integer, nullable=False)
    x = Column(Integer, nullable=False)
    y = Column(Integer, nullable=False)
    r2_key = Column(String, nullable=False, unique=True)  # object key within bucket
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class CleanupLock(Base):
    __tablename__ = "cleanup_lock"
    id = Column(Integer, primary_key=True, autoincrement=False)
    locked_at = Column(DateTime, nullable=False)
    locked_by = Column(String, nullable=False)

    __table_args__ = (CheckConstraint("id = 1", name="ck_cleanup_lock_singleton"),)


class DeletionRecord(Base):
    """Append-only audit row, one per completed cleanup run."""

    __tablename__ = "deletion_record"
    id = Column(String, primary_key=True)
    executed_at = Column(DateTime, nullable=False)
    canvases_deleted = Column(Integer, nullable=False)
    tiles_deleted = Column(Integer, nullable=False)
    layers_deleted = Column(Integer, nullable=False)
    ogp_images_deleted = Column(Integer, nullable=False)
    total_tiles_before = Column(Integer, nullable=False)
    total_tiles_after = Column(Integer, nullable=False)
    storage_reclaimed_bytes = Column(BigInteger, nullable=False)
    orphaned_tiles_deleted = Column(Integer, default=0, nullable=False)
    orphaned_ogp_deleted = Column(Integer, default=0, nullable=False)
    errors_encountered = Column(Text, nullable=True)  # JSON list or NULL
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("canvases_deleted >= 0", name="ck_deletion_record_canvases"),
        CheckConstraint("tiles_deleted >= 0", name="ck_deletion_record_tiles"),
        CheckConstraint("storage_reclaimed_bytes >= 0", name="ck_deletion_record_bytes"),
        Index("ix_deletion_record_executed_at", "executed_at"),
    )
