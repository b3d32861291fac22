"""
Blob store — public hosting for full songs, clips and the watermark cache.

  LocalBlobStore  — files under storage.local_dir, served at public_base_url
  AzureBlobStore  — azure-storage-blob container with public read access

Upload pattern:
  songs/full/{job_id}.mp3
  songs/clip/{job_id}-clip.m4a
"""
from __future__ import annotations

import abc
import asyncio
import shutil
import structlog
from pathlib import Path
from typing import Optional

import httpx

from config.settings import StorageConfig, get_settings
from core.errors import StorageError

logger = structlog.get_logger()


async def download_to_file(url: str, dest_path: str, timeout: float = 120.0) -> str:
    """Stream url to dest_path."""
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0), follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                with open(dest_path, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
    except (httpx.HTTPError, OSError) as e:
        raise StorageError(f"Download of {url} failed: {e}", url=url) from e
    return dest_path


class BlobStore(abc.ABC):
    @abc.abstractmethod
    async def upload_file(self, local_path: str, dest: str, content_type: str) -> str:
        """Upload local_path under dest and return its public URL."""
        ...


class LocalBlobStore(BlobStore):
    def __init__(self, root_dir: str = "./media", public_base_url: str = "http://localhost:8000/media"):
        self.root = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    async def upload_file(self, local_path: str, dest: str, content_type: str) -> str:
        target = self.root / dest
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, local_path, target)
        except OSError as e:
            raise StorageError(f"Local upload of {dest} failed: {e}", dest=dest) from e
        logger.debug("blob_uploaded", backend="local", dest=dest)
        return f"{self.public_base_url}/{dest}"


class AzureBlobStore(BlobStore):
    """Container is expected to allow anonymous blob reads."""

    def __init__(self, connection_string: str, container: str):
        from azure.storage.blob import BlobServiceClient

        if not connection_string.strip():
            raise StorageError("Missing Azure storage connection string")
        self.container = container
        self.blob_service = BlobServiceClient.from_connection_string(connection_string.strip())

    async def upload_file(self, local_path: str, dest: str, content_type: str) -> str:
        from azure.core.exceptions import AzureError
        from azure.storage.blob import ContentSettings

        def _sync_upload() -> str:
            blob_client = self.blob_service.get_blob_client(container=self.container, blob=dest)
            with open(local_path, "rb") as f:
                blob_client.upload_blob(
                    f,
                    overwrite=True,
                    content_settings=ContentSettings(content_type=content_type),
                )
            return blob_client.url

        try:
            url = await asyncio.to_thread(_sync_upload)
        except (AzureError, OSError) as e:
            raise StorageError(f"Azure upload of {dest} failed: {e}", dest=dest) from e
        logger.debug("blob_uploaded", backend="azure", dest=dest)
        return url


def create_blob_store(config: Optional[StorageConfig] = None) -> BlobStore:
    config = config or get_settings().storage
    if config.backend == "azure":
        return AzureBlobStore(config.azure_connection_string, config.azure_container)
    return LocalBlobStore(config.local_dir, config.public_base_url)
