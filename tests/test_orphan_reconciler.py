import pytest
from sqlalchemy import text

from shared.db import models
from shared.retention.errors import StorageQueryFailure
from shared.retention.orphans import OrphanReconciler
from tests.conftest import add_canvas, add_orphan_tile


def test_dangling_tile_rows_and_blobs_removed(loose_session_factory, storage):
    db = loose_session_factory()
    live = add_canvas(db, storage, tiles=1, shared=True, days_old=1)
    orphan = add_orphan_tile(db, storage)
    db.close()

    stats = OrphanReconciler(loose_session_factory, storage).reconcile()

    assert stats.orphaned_tiles == 1
    assert stats.failed_blob_keys == []
    db = loose_session_factory()
    assert db.get(models.DrawingTile, orphan) is None
    assert db.get(models.DrawingTile, f"{live}-tile-0") is not None
    db.close()
    assert f"{live}/14/0/0.webp" in storage
    assert "missing-canvas/14/" + orphan + ".webp" not in storage


def test_tile_left_by_out_of_band_canvas_delete(loose_session_factory, storage):
    db = loose_session_factory()
    cid = add_canvas(db, storage, tiles=2, shared=True, days_old=1)
    db.execute(text("DELETE FROM canvas WHERE id = :id"), {"id": cid})
    db.commit()
    db.close()

    stats = OrphanReconciler(loose_session_factory, storage).reconcile()
    assert stats.orphaned_tiles == 2
    assert storage.list(cid) == []


def test_orphan_tile_blob_failure_still_counts_row(loose_session_factory, storage):
    db = loose_session_factory()
    tid = add_orphan_tile(db, storage)
    db.close()
    key = f"missing-canvas/14/{tid}.webp"
    storage.fail_deletes[key] = 2

    stats = OrphanReconciler(loose_session_factory, storage).reconcile()
    assert stats.orphaned_tiles == 1
    assert stats.failed_blob_keys == [key]


def test_unreferenced_previews_removed(session_factory, storage):
    db = session_factory()
    cid = add_canvas(db, storage, ogp=True, shared=True, tiles=1, days_old=1)
    db.close()
    storage.put_object("ogp/gone.png", b"p" * 20)
    storage.put_object("ogp/also-gone.png", b"p" * 20)

    stats = OrphanReconciler(session_factory, storage).reconcile()

    assert stats.orphaned_ogp == 2
    assert f"ogp/{cid}.png" in storage
    assert "ogp/gone.png" not in storage


def test_unreferenced_tile_blob_removed(session_factory, storage):
    db = session_factory()
    cid = add_canvas(db, storage, tiles=1, shared=True, days_old=1)
    db.close()
    storage.put_object("gone-canvas/14/3/4.webp", b"x" * 12)

    stats = OrphanReconciler(session_factory, storage).reconcile()

    assert stats.orphaned_tile_blobs == 1
    assert stats.orphaned_ogp == 0
    assert stats.bytes_reclaimed == 12
    assert "gone-canvas/14/3/4.webp" not in storage
    assert f"{cid}/14/0/0.webp" in storage


def test_tile_prefix_limits_blob_scan(session_factory, storage):
    storage.put_object("tiles/gone/14/0/0.webp", b"x")
    storage.put_object("exports/report.csv", b"z")

    stats = OrphanReconciler(session_factory, storage, tile_prefix="tiles/").reconcile()

    assert stats.orphaned_tile_blobs == 1
    assert "tiles/gone/14/0/0.webp" not in storage
    assert "exports/report.csv" in storage


def test_list_failure_is_reported_and_nothing_deleted(session_factory, storage):
    storage.put_object("ogp/stray.png", b"p")

    def broken_list(prefix=""):
        raise ConnectionError("endpoint unreachable")

    storage.list = broken_list
    stats = OrphanReconciler(session_factory, storage).reconcile()

    assert len(stats.list_failures) == 2
    assert "endpoint unreachable" in stats.list_failures[0]
    assert stats.orphaned_ogp == 0
    assert "ogp/stray.png" in storage


def test_query_failure_is_storage_query_failure(storage):
    class BrokenSession:
        def execute(self, *a, **kw):
            from sqlalchemy.exc import OperationalError
            raise OperationalError("SELECT", {}, Exception("no such table"))

        def rollback(self):
            return None

        def close(self):
            return None

    with pytest.raises(StorageQueryFailure):
        OrphanReconciler(lambda: BrokenSession(), storage).reconcile()
