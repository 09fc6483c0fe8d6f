"""
Run the canvas retention cleanup once, synchronously (manual operator trigger).

Exit codes: 0 success, 1 run failed, 2 another run holds the lock.

Usage:
  DATABASE_URL=... S3_ENDPOINT_URL=... python scripts/run_cleanup.py [--safety-cap 1000] [--page-size 100] [--json]
"""

import argparse
import json
import sys

from shared.config.settings import settings
from shared.db.session import SessionLocal
from shared.retention.errors import LockHeld
from shared.retention.service import CleanupContext, execute_cleanup
from shared.storage.s3 import Storage


def main(argv=None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--safety-cap", type=int, default=None, help="Max canvases to delete in this run")
    ap.add_argument("--page-size", type=int, default=None, help="Canvases fetched per page")
    ap.add_argument("--holder", default=None, help="Lock holder id to record (default: worker-<host>-<pid>-<rand>)")
    ap.add_argument("--json", action="store_true", help="Print the result as JSON")
    args = ap.parse_args(argv)

    overrides = {}
    if args.safety_cap is not None:
        overrides["cleanup_safety_cap"] = args.safety_cap
    if args.page_size is not None:
        overrides["cleanup_page_size"] = args.page_size
    cfg = settings.model_copy(update=overrides) if overrides else settings

    ctx = CleanupContext(session_factory=SessionLocal, storage=Storage(), settings=cfg, holder=args.holder)
    try:
        result = execute_cleanup(ctx)
    except LockHeld as e:
        print(f"Skipped: cleanup locked by {e.holder} since {e.held_at.isoformat()}")
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"success={result.success} record={result.deletion_record_id} canvases={result.canvases_processed}")
        if result.stats:
            s = result.stats
            print(
                f"tiles={s.tiles_deleted} ogp={s.ogp_images_deleted} orphan_tiles={s.orphaned_tiles_deleted} "
                f"orphan_ogp={s.orphaned_ogp_deleted} bytes={s.storage_reclaimed_bytes} "
                f"tiles_before={s.total_tiles_before} tiles_after={s.total_tiles_after}"
            )
        for err in result.errors:
            print("error:", err)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
