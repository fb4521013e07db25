"""
Storage layer for the web crawler system.
"""

from .database import (
    DatabaseManager, DatabaseError, RecordNotFoundError, SiteRecord, StorageError, UpsertOutcome
)
from .blob_store import BlobStore, BlobStoreError, BlobNotFoundError
from .duplicate_detector import DuplicateDetector, hash_content

__all__ = [
    'DatabaseManager', 'DatabaseError', 'RecordNotFoundError', 'SiteRecord', 'StorageError',
    'UpsertOutcome', 'BlobStore', 'BlobStoreError', 'BlobNotFoundError',
    'DuplicateDetector', 'hash_content'
]
