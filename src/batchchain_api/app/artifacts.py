"""Artifact storage for generated images.

Terms:
- Bucket: a top-level container; created lazily the first time it is needed.
- Public URL: `{base_url}/{bucket}/{path}`; the same shape is parsed back by
  `split_public_url` so references hosted here skip the HTTP round trip.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)


class ArtifactStorageError(RuntimeError):
    """Raised when an artifact cannot be written or read."""


class BucketExistsError(ArtifactStorageError):
    """Raised by create_bucket when another writer created the bucket first."""


class ArtifactStore(Protocol):
    base_url: str

    def bucket_exists(self, bucket: str) -> bool: ...

    def create_bucket(self, bucket: str) -> None: ...

    def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str: ...

    def download(self, bucket: str, path: str) -> bytes: ...

    def public_url(self, bucket: str, path: str) -> str: ...


class LocalArtifactStore:
    """Filesystem-backed store: one directory per bucket under `root`."""

    def __init__(self, root: Path, *, base_url: str) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()

    def bucket_exists(self, bucket: str) -> bool:
        return self._bucket_dir(bucket).is_dir()

    def create_bucket(self, bucket: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        try:
            self._bucket_dir(bucket).mkdir(exist_ok=False)
        except FileExistsError as exc:
            raise BucketExistsError(f"Bucket '{bucket}' already exists") from exc

    def upload(self, bucket: str, path: str, data: bytes, *, content_type: str) -> str:
        target = self._object_path(bucket, path)
        if not self.bucket_exists(bucket):
            raise ArtifactStorageError(f"Bucket '{bucket}' not found")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename keeps readers from seeing partial files (upsert semantics).
            staging = target.with_name(f".{target.name}.part")
            with self._lock:
                staging.write_bytes(data)
                staging.replace(target)
        except OSError as exc:
            raise ArtifactStorageError(f"Failed to upload {bucket}/{path}: {exc}") from exc
        logger.debug(
            "artifact_upload bucket=%s path=%s bytes=%d content_type=%s",
            bucket,
            path,
            len(data),
            content_type,
        )
        return self.public_url(bucket, path)

    def download(self, bucket: str, path: str) -> bytes:
        target = self._object_path(bucket, path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise ArtifactStorageError(f"Failed to download {bucket}/{path}: {exc}") from exc

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/{bucket}/{path.lstrip('/')}"

    def _bucket_dir(self, bucket: str) -> Path:
        if not bucket or "/" in bucket or bucket in {".", ".."}:
            raise ArtifactStorageError(f"Invalid bucket name: {bucket!r}")
        return self.root / bucket

    def _object_path(self, bucket: str, path: str) -> Path:
        relative = PurePosixPath(path.lstrip("/"))
        if not relative.parts or ".." in relative.parts:
            raise ArtifactStorageError(f"Invalid object path: {path!r}")
        return self._bucket_dir(bucket).joinpath(*relative.parts)


def ensure_bucket(store: ArtifactStore, bucket: str) -> bool:
    """Create `bucket` if missing. Returns True when this call created it.

    A concurrent creator winning the race is not an error.
    """
    if store.bucket_exists(bucket):
        return False
    try:
        store.create_bucket(bucket)
    except BucketExistsError:
        logger.info("artifact_bucket event=create_raced bucket=%s", bucket)
        return False
    logger.info("artifact_bucket event=created bucket=%s", bucket)
    return True


def artifact_path(owner_id: str, task_id: str) -> str:
    return f"{owner_id}/generated/{task_id}.png"


def split_public_url(url: str, base_url: str) -> tuple[str, str] | None:
    """Map a public URL of this store back to (bucket, path); None for foreign URLs."""
    base = urlparse(base_url.rstrip("/"))
    parsed = urlparse(url)
    if (parsed.scheme, parsed.netloc) != (base.scheme, base.netloc):
        return None
    prefix = base.path.rstrip("/") + "/"
    if not parsed.path.startswith(prefix):
        return None
    remainder = unquote(parsed.path[len(prefix) :])
    bucket, _, path = remainder.partition("/")
    if not bucket or not path:
        return None
    return bucket, path
