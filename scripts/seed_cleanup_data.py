"""
Seed backdated canvases for checking the cleanup job by hand.

Creates, with tiles and blobs where relevant:
  - empty canvas, 31 days old            -> deleted
  - unshared canvas with tiles, 31 days  -> deleted
  - empty canvas, 29 days old            -> kept
  - shared canvas with tiles, 31 days    -> kept
  - one tile row pointing at a missing canvas and one unreferenced ogp/ blob -> orphans

Usage:
  python scripts/seed_cleanup_data.py
"""

import uuid
from datetime import timedelta

from sqlalchemy import text

from shared.db.session import SessionLocal
from shared.db import models
from shared.db.models import utcnow
from shared.storage.s3 import Storage

TILE_BYTES = b"RIFF\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 64
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 128


def _canvas(db, storage, days_old: int, tiles: int, shared: bool, with_ogp: bool = False) -> str:
    cid = str(uuid.uuid4())
    created = utcnow() - timedelta(days=days_old)
    canvas = models.Canvas(
        id=cid,
        center_lat=35.68,
        center_lng=139.76,
        zoom=14,
        created_at=created,
        updated_at=created,
        tile_count=tiles,
        share_lat=35.0 if shared else None,
        share_lng=139.0 if shared else None,
        share_zoom=14 if shared else None,
    )
    if with_ogp:
        canvas.ogp_image_key = Storage.ogp_key(cid)
        storage.put_object(canvas.ogp_image_key, PNG_BYTES, content_type="image/png")
    db.add(canvas)
    db.flush()
    for i in range(tiles):
        key = Storage.tile_key(cid, 14, 1000 + i, 2000)
        storage.put_object(key, TILE_BYTES, content_type="image/webp")
        db.add(models.DrawingTile(id=str(uuid.uuid4()), canvas_id=cid, z=14, x=1000 + i, y=2000, r2_key=key))
    return cid


def main():
    storage = Storage()
    storage.ensure_bucket()
    db = SessionLocal()
    try:
        created = {
            "empty_31d": _canvas(db, storage, 31, 0, shared=False, with_ogp=True),
            "unshared_31d": _canvas(db, storage, 31, 3, shared=False),
            "empty_29d": _canvas(db, storage, 29, 0, shared=False),
            "shared_31d": _canvas(db, storage, 31, 5, shared=True),
        }
        db.commit()

        # Orphans: the FK has to be bypassed to leave a dangling tile row behind
        ghost = str(uuid.uuid4())
        orphan_key = Storage.tile_key(ghost, 14, 1, 1)
        storage.put_object(orphan_key, TILE_BYTES, content_type="image/webp")
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SET session_replication_role = replica"))
        db.execute(
            text(
                "INSERT INTO drawing_tile (id, canvas_id, z, x, y, r2_key, created_at, updated_at) "
                "VALUES (:id, :cid, 14, 1, 1, :key, :ts, :ts)"
            ),
            {"id": str(uuid.uuid4()), "cid": ghost, "key": orphan_key, "ts": utcnow()},
        )
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SET session_replication_role = DEFAULT"))
        db.commit()
        storage.put_object(Storage.ogp_key(ghost), PNG_BYTES, content_type="image/png")

        print("Seeded canvases:")
        for label, cid in created.items():
            print(f"- {label}: {cid}")
        print(f"- orphan tile/ogp for missing canvas {ghost}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
