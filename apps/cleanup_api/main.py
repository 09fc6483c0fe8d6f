from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse, Response
import json
import os
import subprocess

from shared.config.settings import settings
from shared.db.session import SessionLocal, get_db
from sqlalchemy import text as _sql_text
from shared.db import models
from shared.retention.errors import LockHeld
from shared.retention.service import CleanupContext, execute_cleanup
from shared.storage.s3 import Storage
from structlog import get_logger
from structlog.contextvars import bind_contextvars, clear_contextvars
import time as _t
import redis as redis_lib
from starlette.middleware.base import BaseHTTPMiddleware
import secrets
from prometheus_client import Counter, Histogram, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

from contextlib import asynccontextmanager


@asynccontextmanager
async def _lifespan(app: FastAPI):
    # Skip external IO in test environments
    if not (os.getenv("CLEANUP_SKIP_STARTUP_CHECKS") or os.getenv("PYTEST_CURRENT_TEST")):
        try:
            Storage().ensure_bucket()
            db = SessionLocal()
            db.close()
        except Exception as e:
            # Don't crash startup; healthz will reflect degraded state
            log = get_logger()
            log.error("lifespan_start_failed", error=str(e))
    yield


app = FastAPI(title="Canvas Retention Admin API", version="0.1.0", lifespan=_lifespan)
log = get_logger()

# Prometheus metrics (API process only)
registry = CollectorRegistry()
MANUAL_RUNS_TOTAL = Counter(
    "cleanup_manual_runs_total",
    "Cleanup runs triggered through the admin API",
    ["status"],
    registry=registry,
)
MANUAL_RUN_SECONDS = Histogram(
    "cleanup_manual_run_seconds",
    "Latency of synchronous cleanup runs",
    registry=registry,
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or secrets.token_hex(8)
        try:
            bind_contextvars(request_id=rid, path=str(request.url.path))
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            clear_contextvars()


# Simple log throttle to avoid spamming identical warnings
_log_throttle: dict[str, float] = {}

def _should_log(key: str, window_sec: float = 60.0) -> bool:
    now = _t.monotonic()
    last = _log_throttle.get(key)
    if last is None or (now - last) >= window_sec:
        _log_throttle[key] = now
        return True
    return False


class HTTPAccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = _t.perf_counter()
        response = await call_next(request)
        dur_ms = int((_t.perf_counter() - start) * 1000)
        rid = response.headers.get("X-Request-ID") or request.headers.get("X-Request-ID")
        log.info(
            "http_access",
            method=request.method,
            path=str(request.url.path),
            status_code=response.status_code,
            duration_ms=dur_ms,
            request_id=rid,
        )
        return response


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Only enforce when enabled; skip for health, metrics and version
        if os.getenv('API_AUTH_ENABLED', '0').lower() in {'1', 'true', 'yes', 'on'}:
            path = request.url.path
            if path.startswith('/v0/') and not path.startswith('/v0/version'):
                key = request.headers.get('X-API-Key')
                want = os.getenv('API_KEY')
                if not want or key != want:
                    return JSONResponse({"detail": "Unauthorized"}, status_code=401)
        return await call_next(request)


# Starlette runs the last-added middleware outermost
app.add_middleware(APIKeyAuthMiddleware)
app.add_middleware(HTTPAccessLogMiddleware)
app.add_middleware(RequestIDMiddleware)


def get_cleanup_context() -> CleanupContext:
    return CleanupContext(session_factory=SessionLocal, storage=Storage(), settings=settings)


@app.get("/healthz")
def healthz():
    # DB check
    db_ok = False
    db = None
    try:
        db = SessionLocal()
        db.execute(_sql_text("SELECT 1"))
        db_ok = True
    except Exception as e:
        if _should_log("db_error"):
            log.error("health_db_error", error=str(e))
    finally:
        if db is not None:
            db.close()

    # Redis check (Celery broker for the scheduled run)
    redis_ok = False
    try:
        r = redis_lib.from_url(settings.redis_url)
        redis_ok = bool(r.ping())
    except Exception as e:
        if _should_log("redis_error"):
            log.error("health_redis_error", error=str(e))

    # S3/MinIO check
    s3_ok = False
    try:
        s = Storage()
        s3_ok = s.client.bucket_exists(s.bucket)
    except Exception as e:
        if _should_log("s3_error"):
            log.error("health_s3_error", error=str(e))

    ok = db_ok and redis_ok and s3_ok
    payload = {
        "status": "ok" if ok else "degraded",
        "components": {"db": db_ok, "redis": redis_ok, "s3": s3_ok},
    }
    return JSONResponse(payload, status_code=200 if ok else 503)


@app.get("/metrics")
def metrics():
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# Lightweight version surface for ops/debugging
@app.get("/v0/version")
def version_info():
    git = os.getenv("GIT_SHA")
    if not git:
        try:
            r = subprocess.run(["git", "rev-parse", "--short", "HEAD"], capture_output=True, text=True, timeout=1)
            if r.returncode == 0:
                git = (r.stdout or "").strip() or None
        except (OSError, subprocess.SubprocessError):
            git = None
    return {"version": app.version, "git": git}


def _record_json(rec: models.DeletionRecord) -> dict:
    return {
        "id": rec.id,
        "executed_at": rec.executed_at.isoformat() if rec.executed_at else None,
        "canvases_deleted": rec.canvases_deleted,
        "tiles_deleted": rec.tiles_deleted,
        "layers_deleted": rec.layers_deleted,
        "ogp_images_deleted": rec.ogp_images_deleted,
        "orphaned_tiles_deleted": rec.orphaned_tiles_deleted,
        "orphaned_ogp_deleted": rec.orphaned_ogp_deleted,
        "storage_reclaimed_bytes": rec.storage_reclaimed_bytes,
        "total_tiles_before": rec.total_tiles_before,
        "total_tiles_after": rec.total_tiles_after,
        "errors": json.loads(rec.errors_encountered) if rec.errors_encountered else [],
        "duration_ms": rec.duration_ms,
    }


@app.get("/v0/cleanup/records")
def list_records(limit: int = 20, db=Depends(get_db)):
    limit = max(1, min(limit, 200))
    rows = (
        db.query(models.DeletionRecord)
        .order_by(models.DeletionRecord.executed_at.desc())
        .limit(limit)
        .all()
    )
    return {"items": [_record_json(r) for r in rows]}


@app.get("/v0/cleanup/records/{record_id}")
def get_record(record_id: str, db=Depends(get_db)):
    rec = db.get(models.DeletionRecord, record_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="deletion record not found")
    return _record_json(rec)


@app.post("/v0/cleanup/run")
def run_cleanup_now(ctx: CleanupContext = Depends(get_cleanup_context)):
    """Run cleanup synchronously; 409 when a scheduled run holds the lock."""
    start = _t.perf_counter()
    try:
        result = execute_cleanup(ctx)
    except LockHeld as e:
        MANUAL_RUNS_TOTAL.labels(status="skipped").inc()
        log.info("manual_cleanup_skipped", holder=e.holder)
        return JSONResponse(
            {"detail": "cleanup already running", "holder": e.holder, "held_at": e.held_at.isoformat()},
            status_code=409,
        )
    finally:
        MANUAL_RUN_SECONDS.observe(_t.perf_counter() - start)

    MANUAL_RUNS_TOTAL.labels(status="succeeded" if result.success else "failed").inc()
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 500)
