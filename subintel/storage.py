"""Bucketed object storage on the local filesystem with signed download URLs."""
from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

log = logging.getLogger(__name__)


class StorageError(Exception):
    """Object storage call failed (bad path, missing object, write conflict)."""


def has_path_traversal(path: str) -> bool:
    return ".." in path or path.startswith("/") or path.startswith("\\")


class ObjectStorage:
    def __init__(self, root: str | Path, secret: str, base_url: str = ""):
        self.root = Path(root)
        self._serializer = URLSafeTimedSerializer(secret, salt="subintel-storage")
        self.base_url = base_url.rstrip("/")

    def _object_path(self, bucket: str, path: str) -> Path:
        if not bucket or has_path_traversal(bucket) or "/" in bucket:
            raise StorageError(f"Invalid bucket: {bucket!r}")
        if not path or has_path_traversal(path):
            raise StorageError(f"Invalid object path: {path!r}")
        return self.root / bucket / path

    def exists(self, bucket: str, path: str) -> bool:
        return self._object_path(bucket, path).is_file()

    def upload(
        self, bucket: str, path: str, data: bytes,
        content_type: str = "application/octet-stream", upsert: bool = False,
    ) -> str:
        target = self._object_path(bucket, path)
        if target.exists() and not upsert:
            raise StorageError(f"Object already exists: {bucket}/{path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Could not write {bucket}/{path}: {exc}") from exc
        log.info("Stored %s/%s (%d bytes, %s)", bucket, path, len(data), content_type)
        return f"{bucket}/{path}"

    def download(self, bucket: str, path: str) -> bytes:
        target = self._object_path(bucket, path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"Could not download {bucket}/{path}: object not found") from exc
        except OSError as exc:
            raise StorageError(f"Could not download {bucket}/{path}: {exc}") from exc

    # -----------------------------------------------------------------------
    # Signed URLs
    # -----------------------------------------------------------------------

    def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        """URL valid for ``ttl_seconds``; the token binds bucket, path and ttl."""
        if not self.exists(bucket, path):
            raise StorageError(f"Cannot sign missing object: {bucket}/{path}")
        token = self._serializer.dumps([bucket, path, ttl_seconds])
        return f"{self.base_url}/storage/{bucket}/{quote(path)}?ttl={ttl_seconds}&token={token}"

    def verify_signature(self, bucket: str, path: str, ttl_seconds: int, token: str) -> bool:
        try:
            payload = self._serializer.loads(token, max_age=ttl_seconds)
        except SignatureExpired:
            log.info("Expired download token for %s/%s", bucket, path)
            return False
        except BadSignature:
            return False
        return payload == [bucket, path, ttl_seconds]
