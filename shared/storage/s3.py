import io
import os
from dataclasses import dataclass
from typing import Iterator, Optional

from minio import Minio
from minio.error import S3Error

try:
    # Optional centralized settings
    from shared.config.settings import settings as _settings
except Exception:  # pragma: no cover - settings optional at import time
    _settings = None

# S3 error codes that mean "the object is not there"
_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "ResourceNotFound"}


@dataclass(frozen=True)
class BlobInfo:
    key: str
    size: int


class Storage:
    """Thin MinIO wrapper exposing the blob contract used by cleanup: head, delete, list."""

    def __init__(self):
        endpoint_env = os.getenv("S3_ENDPOINT_URL", "http://localhost:9000")
        endpoint = endpoint_env.replace("http://", "").replace("https://", "")
        secure = os.getenv("S3_SECURE", "false").lower() in {"1", "true", "yes", "on"}
        bucket = os.getenv("S3_BUCKET", "oekaki-tiles")

        if _settings is not None:
            endpoint = _settings.s3_endpoint_url.replace("http://", "").replace("https://", "") or endpoint
            secure = bool(_settings.s3_secure)
            bucket = _settings.s3_bucket or bucket

        self.bucket = bucket
        self.client = Minio(
            endpoint,
            access_key=(getattr(_settings, "s3_access_key", None) or os.getenv("S3_ACCESS_KEY", "minioadmin")),
            secret_key=(getattr(_settings, "s3_secret_key", None) or os.getenv("S3_SECRET_KEY", "minioadmin")),
            region=(getattr(_settings, "s3_region", None) or os.getenv("S3_REGION", "us-east-1")),
            secure=secure,
        )

    def ensure_bucket(self):
        found = self.client.bucket_exists(self.bucket)
        if not found:
            self.client.make_bucket(self.bucket)

    def put_object(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        self.client.put_object(self.bucket, key, io.BytesIO(data), length=len(data), content_type=content_type)

    @staticmethod
    def tile_key(canvas_id: str, z: int, x: int, y: int) -> str:
        return f"{canvas_id}/{z}/{x}/{y}.webp"

    @staticmethod
    def ogp_key(canvas_id: str, prefix: str = "ogp/") -> str:
        return f"{prefix}{canvas_id}.png"

    def head(self, key: str) -> Optional[int]:
        """Return the object size in bytes, or None when the object does not exist."""
        try:
            stat = self.client.stat_object(self.bucket, key)
        except S3Error as e:
            if e.code in _MISSING_CODES:
                return None
            raise
        return int(stat.size or 0)

    def delete(self, key: str) -> None:
        """Remove object from bucket. Removing a missing key is not an error."""
        self.client.remove_object(self.bucket, key)

    def list(self, prefix: str = "") -> Iterator[BlobInfo]:
        """Yield every object under prefix (recursive)."""
        for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True):
            if obj.is_dir:
                continue
            yield BlobInfo(key=obj.object_name, size=int(obj.size or 0))
