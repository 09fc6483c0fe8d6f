import itertools
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config.settings import Settings
from shared.db import models
from shared.db.models import utcnow
from shared.retention.service import CleanupContext
from shared.storage.s3 import BlobInfo


class FakeStorage:
    """In-memory blob store with the head/delete/list contract of shared.storage.s3.Storage."""

    bucket = "test"

    def __init__(self):
        self._store = {}
        self.fail_deletes = {}  # key -> remaining failures
        self.delete_calls = []

    def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        self._store[key] = data

    def head(self, key: str):
        data = self._store.get(key)
        return len(data) if data is not None else None

    def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        remaining = self.fail_deletes.get(key, 0)
        if remaining:
            self.fail_deletes[key] = remaining - 1
            raise RuntimeError(f"simulated delete failure for {key}")
        self._store.pop(key, None)

    def list(self, prefix: str = ""):
        return [BlobInfo(key=k, size=len(v)) for k, v in sorted(self._store.items()) if k.startswith(prefix)]

    def __contains__(self, key):
        return key in self._store

    def ensure_bucket(self):
        return None


def _make_engine(foreign_keys: bool):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    if foreign_keys:
        @event.listens_for(engine, "connect")
        def _enable_fk(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    models.Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine():
    eng = _make_engine(foreign_keys=True)
    yield eng
    eng.dispose()


@pytest.fixture
def loose_engine():
    """Foreign keys not enforced, so tests can leave dangling tile rows behind."""
    eng = _make_engine(foreign_keys=False)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def loose_session_factory(loose_engine):
    return sessionmaker(bind=loose_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def make_ctx(storage):
    """Build a CleanupContext; each run gets a distinct start second so record ids never collide."""
    base = utcnow()
    ticks = itertools.count()

    def _clock():
        return base + timedelta(seconds=next(ticks))

    def _make(session_factory, **overrides):
        holder = overrides.pop("holder", "worker-test")
        cfg = Settings(**overrides)
        return CleanupContext(
            session_factory=session_factory,
            storage=storage,
            settings=cfg,
            clock=_clock,
            holder=holder,
        )

    return _make


def add_canvas(
    db,
    storage=None,
    days_old: int = 31,
    tiles: int = 0,
    shared: bool = False,
    ogp: bool = False,
    canvas_id: str = None,
    tile_bytes: bytes = b"t" * 10,
    layers: int = 0,
):
    """Insert a canvas (plus tiles/layers/blobs) and commit. Returns the canvas id."""
    cid = canvas_id or str(uuid.uuid4())
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
    if ogp:
        canvas.ogp_image_key = f"ogp/{cid}.png"
        if storage is not None:
            storage.put_object(canvas.ogp_image_key, b"p" * 100)
    db.add(canvas)
    db.flush()
    for i in range(layers):
        db.add(models.Layer(id=f"{cid}-layer-{i}", canvas_id=cid, name=f"Layer {i}", order=i))
    for i in range(tiles):
        key = f"{cid}/14/{i}/0.webp"
        db.add(models.DrawingTile(id=f"{cid}-tile-{i}", canvas_id=cid, z=14, x=i, y=0, r2_key=key))
        if storage is not None:
            storage.put_object(key, tile_bytes)
    db.commit()
    return cid


def add_orphan_tile(db, storage=None, canvas_id: str = "missing-canvas", tile_id: str = None) -> str:
    tid = tile_id or str(uuid.uuid4())
    key = f"{canvas_id}/14/{tid}.webp"
    db.add(models.DrawingTile(id=tid, canvas_id=canvas_id, z=14, x=1, y=1, r2_key=key))
    db.commit()
    if storage is not None:
        storage.put_object(key, b"o" * 7)
    return tid
