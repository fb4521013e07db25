"""
Duplicate content detection by content hashing.

Identical content for a previously seen key is never persisted twice: the
metadata store is consulted (atomically, per key) before the blob is written.
"""

import base64
import hashlib
import logging
import time
from typing import Dict, Optional

from .blob_store import BlobStore
from .database import DatabaseManager, UpsertOutcome


def hash_content(data: bytes) -> str:
    """SHA-256 of the raw bytes, URL-safe base64 encoded."""
    return base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode('ascii')


class DuplicateDetector:
    """
    Applies the upsert-if-changed protocol across the metadata and blob stores.

    A new key gets a record and a blob. A known key whose content hash changed
    gets its hash and fetch time updated and its blob overwritten. A known key
    with identical content is left untouched, unless its blob is missing: the
    hash is committed before the blob is written, so a failed blob write
    leaves a record without a blob. That blob is rewritten on the next fetch
    and the outcome reported as ``UPDATED`` so the page is processed.

    Storage errors are not caught here; they propagate to the caller.
    """

    def __init__(self, database: DatabaseManager, blob_store: BlobStore):
        self.database = database
        self.blob_store = blob_store
        self.logger = logging.getLogger(__name__)

        self.stats = {
            'total_checks': 0,
            'inserted': 0,
            'updated': 0,
            'unchanged': 0,
            'restored': 0
        }

    async def upsert_if_changed(self, key: str, content: bytes,
                                fetched_at: Optional[int] = None) -> UpsertOutcome:
        """Store content for key unless the stored hash and blob already match."""
        self.stats['total_checks'] += 1
        content_hash = hash_content(content)
        fetched_at = fetched_at if fetched_at is not None else int(time.time())

        outcome = await self.database.upsert_hash(key, content_hash, fetched_at)

        if outcome is UpsertOutcome.UNCHANGED:
            if await self.blob_store.has_blob(key):
                self.stats['unchanged'] += 1
                self.logger.debug(f"Content unchanged for {key} (hash {content_hash})")
                return outcome

            self.logger.warning(f"Record for {key} has no stored blob, writing it again")
            self.stats['restored'] += 1
            outcome = UpsertOutcome.UPDATED
        else:
            self.stats[outcome.value] += 1

        await self.blob_store.put_blob(key, content)
        self.logger.info(f"Content {outcome.value} for {key} (hash {content_hash})")
        return outcome

    def get_stats(self) -> Dict[str, int]:
        """Get duplicate detection statistics."""
        return self.stats.copy()
