"""
Blob storage for raw fetched page content.
Supports S3-compatible object storage and local files.

One flat namespace keyed by canonical key; writes overwrite, no versioning.
"""

import contextlib
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import aioboto3
import aiohttp
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .database import StorageError
from ..utils.config import BlobStoreConfig


DEFAULT_CHUNK_SIZE = 64 * 1024

_MISSING_KEY_CODES = {'NoSuchKey', '404', 'NotFound'}


class BlobStoreError(StorageError):
    """Custom exception for blob store operations."""
    pass


class BlobNotFoundError(BlobStoreError):
    """Raised when no blob exists for a key."""
    pass


class BlobBackend:
    """Abstract base class for blob backends."""

    async def initialize(self):
        raise NotImplementedError

    async def put_blob(self, key: str, data: bytes):
        raise NotImplementedError

    async def has_blob(self, key: str) -> bool:
        raise NotImplementedError

    async def open_blob(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Return an async iterator over the blob. Raises BlobNotFoundError eagerly."""
        raise NotImplementedError

    async def get_blob(self, key: str) -> bytes:
        chunks = await self.open_blob(key)
        return b''.join([chunk async for chunk in chunks])

    async def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        pass


class FileBlobBackend(BlobBackend):
    """Stores each blob as a file named after the hash of its key."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'blobs_written': 0,
            'blobs_read': 0,
            'bytes_written': 0
        }

    async def initialize(self):
        try:
            self.data_directory.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"File blob storage initialized at {self.data_directory}")
        except OSError as e:
            raise BlobStoreError(f"Failed to initialize blob directory: {e}") from e

    def _get_file_path(self, key: str) -> Path:
        key_hash = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self.data_directory / key_hash[:2] / f"{key_hash}.html"

    async def put_blob(self, key: str, data: bytes):
        file_path = self._get_file_path(key)
        tmp_path = file_path.with_suffix('.tmp')
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, file_path)
        except OSError as e:
            raise BlobStoreError(f"Failed to write blob for {key}: {e}") from e

        self.stats['blobs_written'] += 1
        self.stats['bytes_written'] += len(data)
        self.logger.info(f"Stored {len(data)} bytes for {key}")

    async def has_blob(self, key: str) -> bool:
        return self._get_file_path(key).is_file()

    async def open_blob(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        file_path = self._get_file_path(key)
        try:
            handle = open(file_path, 'rb')
        except FileNotFoundError:
            raise BlobNotFoundError(f"No blob stored for {key}")
        except OSError as e:
            raise BlobStoreError(f"Failed to open blob for {key}: {e}") from e

        self.stats['blobs_read'] += 1
        return self._iter_file(key, handle, chunk_size)

    async def _iter_file(self, key: str, handle, chunk_size: int) -> AsyncIterator[bytes]:
        with handle:
            while True:
                try:
                    chunk = handle.read(chunk_size)
                except OSError as e:
                    raise BlobStoreError(f"Failed to read blob for {key}: {e}") from e
                if not chunk:
                    break
                yield chunk

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()


class S3BlobBackend(BlobBackend):
    """S3 (or MinIO) bucket backend."""

    def __init__(self, config: Dict[str, Any]):
        self.bucket = config.get('bucket')
        if not self.bucket:
            raise BlobStoreError("S3 blob store requires a bucket name")

        self.endpoint_url = config.get('endpoint_url')
        self.region = config.get('region', 'us-east-1')
        self.session = aioboto3.Session()
        self.client = None
        self._exit_stack: Optional[contextlib.AsyncExitStack] = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'blobs_written': 0,
            'blobs_read': 0,
            'bytes_written': 0
        }

    async def initialize(self):
        self._exit_stack = contextlib.AsyncExitStack()
        try:
            self.client = await self._exit_stack.enter_async_context(self.session.client(
                's3',
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                config=BotoConfig(s3={'addressing_style': 'path'})
            ))
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to create S3 client: {e}") from e
        self.logger.info(f"S3 blob storage initialized for bucket {self.bucket}")

    async def put_blob(self, key: str, data: bytes):
        try:
            await self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to upload blob for {key}: {e}") from e

        self.stats['blobs_written'] += 1
        self.stats['bytes_written'] += len(data)
        self.logger.info(f"Uploaded {len(data)} bytes for {key} to S3")

    async def has_blob(self, key: str) -> bool:
        try:
            await self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_KEY_CODES:
                return False
            raise BlobStoreError(f"Failed to look up blob for {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to look up blob for {key}: {e}") from e
        return True

    async def open_blob(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        try:
            response = await self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in _MISSING_KEY_CODES:
                raise BlobNotFoundError(f"No blob stored for {key}") from e
            raise BlobStoreError(f"Failed to get blob for {key}: {e}") from e
        except BotoCoreError as e:
            raise BlobStoreError(f"Failed to get blob for {key}: {e}") from e

        self.stats['blobs_read'] += 1
        return self._iter_body(key, response['Body'], chunk_size)

    async def _iter_body(self, key: str, body, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            async with body as stream:
                while True:
                    chunk = await stream.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except (BotoCoreError, aiohttp.ClientError) as e:
            raise BlobStoreError(f"Failed to read blob for {key}: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        if self._exit_stack:
            await self._exit_stack.aclose()
            self._exit_stack = None
            self.client = None


class BlobStore:
    """Blob store facade over the configured backend."""

    def __init__(self, config: BlobStoreConfig):
        self.config = config
        self.backend: Optional[BlobBackend] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        backend_type = self.config.type.lower()

        if backend_type == 's3':
            self.backend = S3BlobBackend(self.config.s3)
        elif backend_type == 'file':
            self.backend = FileBlobBackend(self.config.file['data_directory'])
        else:
            raise BlobStoreError(f"Unknown blob store type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Blob store initialized with {backend_type} backend")

    def _require_backend(self) -> BlobBackend:
        if not self.backend:
            raise BlobStoreError("Blob store not initialized")
        return self.backend

    async def put_blob(self, key: str, data: bytes):
        await self._require_backend().put_blob(key, data)

    async def has_blob(self, key: str) -> bool:
        return await self._require_backend().has_blob(key)

    async def get_blob(self, key: str) -> bytes:
        return await self._require_backend().get_blob(key)

    async def open_blob(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        return await self._require_backend().open_blob(key, chunk_size)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._require_backend().get_stats()

    async def close(self):
        if self.backend:
            await self.backend.close()
