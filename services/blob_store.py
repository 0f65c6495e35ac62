"""
Blob store for source PDFs and rasterized page images.

LocalBlobStore writes under UPLOAD_DIR (development, tests).
S3BlobStore writes to S3_BUCKET via boto3 (production).
Keys are plain relative paths, e.g. books/12/pages/page-003.png.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional

import boto3

from extraction.config import BLOB_BACKEND, UPLOAD_DIR, S3_BUCKET, S3_REGION

log = logging.getLogger(__name__)


class BlobStore:
    """Opaque get/put/delete of bytes by key."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def url(self, key: str) -> str:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str = UPLOAD_DIR):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes store root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def delete_prefix(self, prefix: str) -> int:
        path = self._path(prefix.rstrip("/"))
        if not path.exists():
            return 0
        if path.is_file():
            path.unlink()
            return 1
        count = sum(1 for p in path.rglob("*") if p.is_file())
        shutil.rmtree(path)
        return count

    def url(self, key: str) -> str:
        return f"/uploads/{key}"


class S3BlobStore(BlobStore):
    def __init__(self, bucket: str = S3_BUCKET, region: str = S3_REGION, client=None):
        if not bucket:
            raise RuntimeError("S3_BUCKET is not set. Add it to your .env file.")
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return key

    def get(self, key: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def delete_prefix(self, prefix: str) -> int:
        count = 0
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if objects:
                self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": objects})
                count += len(objects)
        return count

    def url(self, key: str) -> str:
        return self.client.generate_presigned_url(
            "get_object", Params={"Bucket": self.bucket, "Key": key}, ExpiresIn=3600
        )


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Get or create the configured blob store."""
    global _blob_store
    if _blob_store is None:
        if BLOB_BACKEND == "s3":
            _blob_store = S3BlobStore()
        else:
            _blob_store = LocalBlobStore()
        log.info("Blob store: %s", type(_blob_store).__name__)
    return _blob_store


def book_prefix(book_id: int) -> str:
    return f"books/{book_id}/"


def source_key(book_id: int) -> str:
    return f"books/{book_id}/source.pdf"


def page_image_key(book_id: int, page_number: int) -> str:
    return f"books/{book_id}/pages/page-{page_number:03d}.png"
