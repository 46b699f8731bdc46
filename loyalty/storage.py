"""
Local filesystem storage for receipt images.

Files live under ``<base_dir>/receipts/<bucket>/<filename>``; callers
only ever see the relative path ``receipts/<bucket>/<filename>``.
"""
import logging
import os
import secrets
import time
from pathlib import Path

from loyalty.config import settings

logger = logging.getLogger(__name__)

ROOT_FOLDER = "receipts"


class StorageError(Exception):
    """A stored image is missing, unreadable or outside the storage root."""


def generate_filename(original_name: str) -> str:
    """``<epoch-ms>-<8 hex chars><ext>``, extension lower-cased, ``.jpg`` by default."""
    ext = Path(original_name or "").suffix.lower() or ".jpg"
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext}"


def _safe_bucket(bucket: str) -> str:
    cleaned = "".join(ch for ch in bucket if ch.isalnum() or ch in "-_")
    return cleaned or settings.UNKNOWN_STORE_BUCKET


class LocalImageStorage:
    def __init__(self, base_dir: str = settings.UPLOAD_DIR):
        self.base_dir = Path(base_dir).resolve()

    def _resolve(self, stored_path: str) -> Path:
        path = (self.base_dir / stored_path).resolve()
        if self.base_dir not in path.parents:
            raise StorageError(f"path escapes storage root: {stored_path}")
        return path

    def save(self, data: bytes, bucket: str, original_filename: str) -> str:
        bucket_dir = self.base_dir / ROOT_FOLDER / _safe_bucket(bucket)
        bucket_dir.mkdir(parents=True, exist_ok=True)
        filename = generate_filename(original_filename)
        (bucket_dir / filename).write_bytes(data)
        stored = f"{ROOT_FOLDER}/{bucket_dir.name}/{filename}"
        logger.info("Saved receipt image %s (%d bytes)", stored, len(data))
        return stored

    def get(self, stored_path: str) -> bytes:
        path = self._resolve(stored_path)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"cannot read {stored_path}: {exc}") from exc

    def delete(self, stored_path: str) -> None:
        path = self._resolve(stored_path)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Delete of missing image %s ignored", stored_path)

    def exists(self, stored_path: str) -> bool:
        try:
            return self._resolve(stored_path).is_file()
        except StorageError:
            return False

    def _files(self):
        root = self.base_dir / ROOT_FOLDER
        if not root.is_dir():
            return []
        return [p for p in root.rglob("*") if p.is_file()]

    def cleanup_older_than(self, days: int) -> int:
        """Delete images last modified more than *days* ago."""
        cutoff = time.time() - days * 86400
        removed = 0
        for path in self._files():
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        logger.info("Removed %d receipt images older than %d days", removed, days)
        return removed

    def stats(self) -> dict:
        files = self._files()
        by_bucket: dict[str, int] = {}
        for path in files:
            by_bucket[path.parent.name] = by_bucket.get(path.parent.name, 0) + 1
        return {
            "total_files": len(files),
            "total_bytes": sum(os.path.getsize(p) for p in files),
            "buckets": by_bucket,
        }
