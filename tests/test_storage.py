"""
Unit tests for the blob stores and the JSON caches
"""

from unittest.mock import MagicMock

import pytest

from services.blob_store import (
    LocalBlobStore, S3BlobStore, book_prefix, page_image_key, source_key,
)
from services.cache import RedisCache, TTLMemoryCache


@pytest.mark.unit
def test_key_layout():
    assert source_key(7) == "books/7/source.pdf"
    assert page_image_key(7, 3) == "books/7/pages/page-003.png"
    assert page_image_key(7, 3).startswith(book_prefix(7))


@pytest.mark.unit
def test_local_put_get_delete(tmp_path):
    store = LocalBlobStore(str(tmp_path))
    key = store.put("books/1/source.pdf", b"%PDF")

    assert store.get(key) == b"%PDF"
    assert store.url(key) == "/uploads/books/1/source.pdf"

    store.delete(key)
    store.delete(key)
    with pytest.raises(FileNotFoundError):
        store.get(key)


@pytest.mark.unit
def test_local_delete_prefix(tmp_path):
    store = LocalBlobStore(str(tmp_path))
    store.put(source_key(1), b"pdf")
    store.put(page_image_key(1, 1), b"png")
    store.put(page_image_key(1, 2), b"png")
    store.put(source_key(2), b"other")

    assert store.delete_prefix(book_prefix(1)) == 3
    assert store.delete_prefix(book_prefix(1)) == 0
    assert store.get(source_key(2)) == b"other"


@pytest.mark.unit
def test_local_rejects_keys_outside_root(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"))
    with pytest.raises(ValueError):
        store.put("../escape.txt", b"x")


@pytest.mark.unit
def test_s3_store_calls_client():
    client = MagicMock()
    client.get_object.return_value = {"Body": MagicMock(read=MagicMock(return_value=b"png"))}
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "books/1/source.pdf"}, {"Key": "books/1/pages/page-001.png"}]},
        {},
    ]
    client.get_paginator.return_value = paginator
    store = S3BlobStore(bucket="exam-papers", client=client)

    assert store.put("books/1/source.pdf", b"pdf", content_type="application/pdf") == "books/1/source.pdf"
    client.put_object.assert_called_once_with(
        Bucket="exam-papers", Key="books/1/source.pdf", Body=b"pdf", ContentType="application/pdf"
    )
    assert store.get("books/1/pages/page-001.png") == b"png"
    assert store.delete_prefix("books/1/") == 2
    client.delete_objects.assert_called_once()


@pytest.mark.unit
def test_s3_store_requires_bucket():
    with pytest.raises(RuntimeError):
        S3BlobStore(bucket="", client=MagicMock())


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.unit
def test_memory_cache_expires_entries():
    clock = _Clock()
    cache = TTLMemoryCache(clock=clock)
    cache.set_json("k", {"progress": 40}, ttl_seconds=1.0)

    assert cache.get_json("k") == {"progress": 40}
    clock.now += 1.5
    assert cache.get_json("k") is None


@pytest.mark.unit
def test_memory_cache_sweep_and_bound():
    clock = _Clock()
    cache = TTLMemoryCache(max_entries=2, clock=clock)
    cache.set_json("a", 1, ttl_seconds=1.0)
    clock.now += 2
    assert cache.sweep() == 1

    cache.set_json("b", 2, ttl_seconds=10)
    cache.set_json("c", 3, ttl_seconds=10)
    cache.set_json("d", 4, ttl_seconds=10)
    assert len(cache) == 2
    assert cache.get_json("b") is None
    assert cache.get_json("d") == 4


@pytest.mark.unit
def test_redis_cache_round_trip_uses_millisecond_expiry():
    client = MagicMock()
    cache = RedisCache(client=client)
    cache.set_json("book_progress:1", {"extraction_progress": 50}, ttl_seconds=1.0)

    args, kwargs = client.set.call_args
    assert args[0] == "book_progress:1"
    assert kwargs["px"] == 1000

    client.get.return_value = args[1]
    assert cache.get_json("book_progress:1") == {"extraction_progress": 50}
