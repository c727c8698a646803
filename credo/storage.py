"""Blob storage for uploaded documents.

Implementations: a local directory (default, ``file://`` URLs) and S3.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote, unquote, urlparse

import httpx

from credo.config import Settings, get_settings

log = logging.getLogger(__name__)

_TIMEOUT = 60.0


class BlobStoreError(Exception):
    """Blob upload or download failed."""


def make_key(filename: str) -> str:
    """Unique object key that keeps the original filename readable."""
    safe = Path(filename).name.replace(" ", "_") or "upload"
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{safe}"


class BlobStore(ABC):
    """Durable document storage addressed by URL."""

    @abstractmethod
    async def put(self, data: bytes, filename: str, content_type: str) -> tuple[str, str]:
        """Store *data*; return ``(key, url)``."""

    @abstractmethod
    async def fetch(self, url: str) -> bytes:
        """Download the bytes previously stored at *url*."""


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path):
        self.root = Path(root)

    async def put(self, data: bytes, filename: str, content_type: str) -> tuple[str, str]:
        key = make_key(filename)
        path = self.root / key
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise BlobStoreError(f"Could not write {key}: {exc}") from exc
        return key, path.resolve().as_uri()

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise BlobStoreError(f"Not a local blob URL: {url}")
        try:
            return await asyncio.to_thread(Path(unquote(parsed.path)).read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Could not read {url}: {exc}") from exc


class S3BlobStore(BlobStore):
    """S3 bucket with publicly readable object URLs."""

    def __init__(self, bucket: str, region: str, client=None):
        if not bucket or not region:
            raise ValueError("S3_BUCKET_NAME and AWS_REGION are required for the s3 blob backend")
        self.bucket = bucket
        self.region = region
        if client is None:
            import boto3
            client = boto3.client("s3", region_name=region)
        self._client = client

    def url_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    async def put(self, data: bytes, filename: str, content_type: str) -> tuple[str, str]:
        key = make_key(filename)
        log.info("Uploading %s to bucket %s", key, self.bucket)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type,
            )
        except Exception as exc:
            raise BlobStoreError(f"S3 upload failed for {key}: {exc}") from exc
        return key, self.url_for(key)

    async def fetch(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(follow_redirects=True, timeout=httpx.Timeout(_TIMEOUT)) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"Failed to download {url}: {exc}") from exc


def build_blob_store(settings: Settings | None = None) -> BlobStore:
    settings = settings or get_settings()
    if settings.blob_backend == "s3":
        return S3BlobStore(settings.s3_bucket, settings.aws_region)
    if settings.blob_backend == "local":
        return LocalBlobStore(settings.blob_dir)
    raise ValueError(f"Unknown blob backend: {settings.blob_backend!r}")
