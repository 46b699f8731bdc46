"""
Unit tests for local receipt image storage.
"""
import os
import re
import time

import pytest

from loyalty.storage import LocalImageStorage, StorageError, generate_filename


@pytest.fixture()
def store_dir(tmp_path):
    return LocalImageStorage(str(tmp_path))


class TestFilename:
    def test_extension_kept(self):
        assert re.match(r"^\d+-[0-9a-f]{8}\.png$", generate_filename("Receipt.PNG"))

    def test_default_extension(self):
        assert generate_filename("upload").endswith(".jpg")
        assert generate_filename("").endswith(".jpg")


class TestLocalImageStorage:
    def test_save_and_get(self, store_dir):
        path = store_dir.save(b"image", "store-1", "r.jpg")
        assert path.startswith("receipts/store-1/")
        assert store_dir.get(path) == b"image"
        assert store_dir.exists(path)

    def test_bucket_sanitized(self, store_dir):
        assert store_dir.save(b"x", "../../etc", "r.jpg").startswith("receipts/etc/")
        assert store_dir.save(b"x", "///", "r.jpg").startswith("receipts/unknown/")

    def test_missing_file(self, store_dir):
        with pytest.raises(StorageError):
            store_dir.get("receipts/store-1/nope.jpg")
        assert not store_dir.exists("receipts/store-1/nope.jpg")

    def test_path_escape(self, store_dir):
        with pytest.raises(StorageError):
            store_dir.get("../secret.txt")
        assert not store_dir.exists("../secret.txt")

    def test_delete(self, store_dir):
        path = store_dir.save(b"image", "store-1", "r.jpg")
        store_dir.delete(path)
        assert not store_dir.exists(path)
        # Deleting again is a no-op
        store_dir.delete(path)

    def test_cleanup_and_stats(self, store_dir):
        old = store_dir.save(b"old", "store-1", "a.jpg")
        store_dir.save(b"newer", "store-2", "b.jpg")
        stale = time.time() - 10 * 86400
        os.utime(store_dir.base_dir / old, (stale, stale))

        assert store_dir.cleanup_older_than(7) == 1
        stats = store_dir.stats()
        assert stats["total_files"] == 1
        assert stats["total_bytes"] == 5
        assert stats["buckets"] == {"store-2": 1}

    def test_stats_empty(self, store_dir):
        assert store_dir.stats() == {"total_files": 0, "total_bytes": 0, "buckets": {}}
