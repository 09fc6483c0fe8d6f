import os
import time
from celery import Celery
from celery.schedules import crontab
from structlog import get_logger
from prometheus_client import Counter, Histogram, Gauge, make_wsgi_app
from wsgiref.simple_server import make_server
from threading import Thread

from shared.config.settings import settings as _settings
from shared.db.session import SessionLocal
from shared.retention.errors import LockHeld
from shared.retention.service import CleanupContext, execute_cleanup
from shared.storage.s3 import Storage

log = get_logger()

CELERY_BROKER_URL = _settings.celery_broker_url or _settings.redis_url
CELERY_RESULT_BACKEND = _settings.celery_result_backend or "redis://redis:6379/1"

celery_app = Celery("cleanup")
celery_app.conf.broker_url = CELERY_BROKER_URL
celery_app.conf.result_backend = CELERY_RESULT_BACKEND
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "daily-canvas-cleanup": {
        "task": "run_cleanup",
        "schedule": crontab(hour=_settings.cleanup_cron_hour, minute=0),
    },
}


# Optional Prometheus metrics server (disabled unless METRICS_PORT is set)
def _start_metrics_and_health_http(port: int):
    """Start a lightweight HTTP server exposing /metrics and /health on given port."""
    metrics_app = make_wsgi_app()

    def app(environ, start_response):
        path = environ.get('PATH_INFO') or '/'
        if path == '/metrics':
            return metrics_app(environ, start_response)
        if path == '/health':
            start_response('200 OK', [('Content-Type', 'text/plain; charset=utf-8')])
            return [b'ok']
        start_response('404 Not Found', [('Content-Type', 'text/plain; charset=utf-8')])
        return [b'not found']

    def _serve():
        with make_server('0.0.0.0', port, app) as httpd:
            log.info("worker_http_server_started", port=httpd.server_port)
            httpd.serve_forever()

    th = Thread(target=_serve, daemon=True)
    th.start()
    return app


try:
    _metrics_port = os.getenv("METRICS_PORT") or (str(_settings.metrics_port) if _settings.metrics_port else None)
    if _metrics_port:
        _start_metrics_and_health_http(int(_metrics_port))
except Exception:
    log.exception("worker_metrics_server_failed")

# Worker metrics
CLEANUP_RUNS_TOTAL = Counter(
    "cleanup_runs_total",
    "Cleanup runs by outcome",
    labelnames=["status"],
)
CLEANUP_DURATION_SECONDS = Histogram(
    "cleanup_duration_seconds",
    "Wall time of a cleanup run",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)
CANVASES_DELETED_TOTAL = Counter(
    "cleanup_canvases_deleted_total",
    "Canvases deleted by the retention job",
)
STORAGE_RECLAIMED_BYTES_TOTAL = Counter(
    "cleanup_storage_reclaimed_bytes_total",
    "Bytes reclaimed from object storage",
)
CLEANUP_LAST_SUCCESS = Gauge(
    "cleanup_last_success_timestamp",
    "Unix timestamp of the last successful cleanup run",
)


def build_context() -> CleanupContext:
    return CleanupContext(session_factory=SessionLocal, storage=Storage(), settings=_settings)


@celery_app.task(name="run_cleanup", acks_late=False)
def run_cleanup():
    t0 = time.perf_counter()
    try:
        result = execute_cleanup(build_context())
    except LockHeld as e:
        # Another run is in progress; wait for the next trigger
        log.info("cleanup_skipped_lock_held", holder=e.holder, held_at=e.held_at.isoformat())
        CLEANUP_RUNS_TOTAL.labels(status="skipped").inc()
        return {"status": "skipped", "holder": e.holder, "held_at": e.held_at.isoformat()}
    finally:
        CLEANUP_DURATION_SECONDS.observe(time.perf_counter() - t0)

    if result.success:
        CLEANUP_RUNS_TOTAL.labels(status="succeeded").inc()
        CLEANUP_LAST_SUCCESS.set_to_current_time()
    else:
        CLEANUP_RUNS_TOTAL.labels(status="failed").inc()
        log.error("cleanup_run_failed", errors=result.errors)
    CANVASES_DELETED_TOTAL.inc(result.canvases_processed)
    if result.stats:
        STORAGE_RECLAIMED_BYTES_TOTAL.inc(result.stats.storage_reclaimed_bytes)
    return {"status": "succeeded" if result.success else "failed", **result.to_dict()}
