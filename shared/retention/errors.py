from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    storage_query = "storage_query"
    container_delete = "container_delete"
    blob_delete = "blob_delete"
    audit_write = "audit_write"
    blob_list = "blob_list"
    internal = "internal"


@dataclass(frozen=True)
class CleanupError:
    kind: ErrorKind
    message: str
    canvas_id: Optional[str] = None

    def __str__(self) -> str:
        if self.canvas_id:
            return f"{self.kind.value}: canvas {self.canvas_id}: {self.message}"
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


class LockHeld(Exception):
    """Another cleanup run holds a non-stale lock. Expected; the caller should skip this run."""

    def __init__(self, holder: str, held_at: datetime):
        super().__init__(f"Cleanup already running (locked by {holder} since {held_at.isoformat()})")
        self.holder = holder
        self.held_at = held_at


class StorageQueryFailure(Exception):
    """A metadata-store query the run depends on failed; the run is aborted."""
