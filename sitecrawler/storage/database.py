"""
Metadata store for crawled sites.
Supports both Cassandra and file-based storage.

Each site has exactly one record, keyed by its canonical key (host + path).
"""

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

try:
    from cassandra.cluster import Cluster
    from cassandra.policies import DCAwareRoundRobinPolicy
    CASSANDRA_AVAILABLE = True
except ImportError:
    CASSANDRA_AVAILABLE = False

from ..utils.config import DatabaseConfig


class StorageError(Exception):
    """Base class for storage failures that must stop the worker."""
    pass


class DatabaseError(StorageError):
    """Metadata store operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Raised when a record that must exist is missing."""
    pass


class UpsertOutcome(Enum):
    """Result of an upsert-if-changed against the metadata store."""
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        return self is not UpsertOutcome.UNCHANGED


# Fields that may be changed through update_record
UPDATABLE_FIELDS = frozenset({'hash', 'last_fetched', 'last_updated', 'back_link_count', 'content'})


@dataclass
class SiteRecord:
    """Metadata record for one crawl target."""
    url: str
    content_hash: str
    last_fetched: int
    last_updated: int = 0
    back_link_count: int = 0
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored document shape."""
        return {
            'url': self.url,
            'hash': self.content_hash,
            'last_fetched': self.last_fetched,
            'last_updated': self.last_updated,
            'back_link_count': self.back_link_count,
            'content': self.content
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SiteRecord':
        """Create SiteRecord from a stored document."""
        return cls(
            url=data['url'],
            content_hash=data['hash'],
            last_fetched=data.get('last_fetched', 0),
            last_updated=data.get('last_updated', 0),
            back_link_count=data.get('back_link_count', 0),
            content=data.get('content')
        )


class StorageBackend:
    """Abstract base class for metadata backends."""

    async def initialize(self):
        """Initialize the storage backend."""
        raise NotImplementedError

    async def get_record(self, key: str) -> Optional[SiteRecord]:
        """Look up a record, returning None if there is none."""
        raise NotImplementedError

    async def insert_record(self, record: SiteRecord):
        """Insert a new record. Fails if the key is already taken."""
        raise NotImplementedError

    async def update_record(self, key: str, fields: Dict[str, Any]) -> bool:
        """Set fields on an existing record. Returns False if no record matched."""
        raise NotImplementedError

    async def upsert_hash(self, key: str, content_hash: str, fetched_at: int) -> UpsertOutcome:
        """
        Record a freshly fetched content hash for a key.

        Inserts a new record if the key is unknown, updates hash and fetch time
        if the stored hash differs, and writes nothing if it matches.
        Backends with an atomic conditional write override this.
        """
        existing = await self.get_record(key)

        if existing is None:
            await self.insert_record(SiteRecord(
                url=key,
                content_hash=content_hash,
                last_fetched=fetched_at
            ))
            return UpsertOutcome.INSERTED

        if existing.content_hash != content_hash:
            matched = await self.update_record(key, {'hash': content_hash, 'last_fetched': fetched_at})
            if not matched:
                raise RecordNotFoundError(f"Record disappeared during update: {key}")
            return UpsertOutcome.UPDATED

        return UpsertOutcome.UNCHANGED

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


def _check_fields(fields: Dict[str, Any]):
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise DatabaseError(f"Cannot update unknown fields: {sorted(unknown)}")


class FileStorageBackend(StorageBackend):
    """
    File-based storage backend for development and single-host deployments.

    One JSON document per key. Upserts are serialized with an asyncio lock,
    so they are atomic within one process only.
    """

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self.stats = {
            'lookups': 0,
            'inserts': 0,
            'updates': 0,
            'storage_errors': 0
        }

    async def initialize(self):
        try:
            (self.data_directory / 'metadata').mkdir(parents=True, exist_ok=True)
            self.logger.info(f"File metadata storage initialized at {self.data_directory}")
        except OSError as e:
            raise DatabaseError(f"Failed to initialize file storage: {e}") from e

    def _get_file_path(self, key: str) -> Path:
        """Generate file path for a key."""
        key_hash = hashlib.sha256(key.encode('utf-8')).hexdigest()
        # fan out over 256 subdirectories
        return self.data_directory / 'metadata' / key_hash[:2] / f"{key_hash}.json"

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        file_path = self._get_file_path(key)
        if not file_path.exists():
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.stats['storage_errors'] += 1
            raise DatabaseError(f"Failed to read record for {key}: {e}") from e

    def _write(self, key: str, data: Dict[str, Any]):
        file_path = self._get_file_path(key)
        tmp_path = file_path.with_suffix('.tmp')
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, file_path)
        except OSError as e:
            self.stats['storage_errors'] += 1
            raise DatabaseError(f"Failed to write record for {key}: {e}") from e

    async def get_record(self, key: str) -> Optional[SiteRecord]:
        self.stats['lookups'] += 1
        data = self._read(key)
        return SiteRecord.from_dict(data) if data is not None else None

    async def insert_record(self, record: SiteRecord):
        if self._get_file_path(record.url).exists():
            raise DatabaseError(f"Record already exists: {record.url}")
        self._write(record.url, record.to_dict())
        self.stats['inserts'] += 1
        self.logger.debug(f"Inserted record for {record.url}")

    async def update_record(self, key: str, fields: Dict[str, Any]) -> bool:
        _check_fields(fields)
        data = self._read(key)
        if data is None:
            return False
        data.update(fields)
        self._write(key, data)
        self.stats['updates'] += 1
        self.logger.debug(f"Updated {sorted(fields)} for {key}")
        return True

    async def upsert_hash(self, key: str, content_hash: str, fetched_at: int) -> UpsertOutcome:
        async with self._lock:
            return await super().upsert_hash(key, content_hash, fetched_at)

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        pass


KEYSPACE_DDL = """
    CREATE KEYSPACE IF NOT EXISTS {keyspace}
    WITH replication = {{'class': 'SimpleStrategy', 'replication_factor': {replication_factor}}}
"""

SITES_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS sites (
        url text PRIMARY KEY,
        hash text,
        last_fetched bigint,
        last_updated bigint,
        back_link_count int,
        content text
    )
"""


class CassandraStorageBackend(StorageBackend):
    """
    Cassandra storage backend for production deployments.

    Upserts use lightweight transactions so concurrent fetchers racing on the
    same key cannot both write.
    """

    def __init__(self, config: Dict[str, Any]):
        if not CASSANDRA_AVAILABLE:
            raise DatabaseError("cassandra backend selected but cassandra-driver is not installed (pip install sitecrawler[cassandra])")

        self.config = config
        self.cluster = None
        self.session = None
        self.statements = {}
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'lookups': 0,
            'inserts': 0,
            'updates': 0,
            'query_errors': 0
        }

    async def initialize(self):
        """Connect, then create the keyspace and ``sites`` table if missing."""
        keyspace = self.config.get('keyspace', 'crawler_data')
        try:
            self.cluster = Cluster(
                self.config.get('hosts', ['localhost']),
                port=self.config.get('port', 9042),
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            self.session = self.cluster.connect()
            self.session.execute(KEYSPACE_DDL.format(
                keyspace=keyspace,
                replication_factor=self.config.get('replication_factor', 1)
            ))
            self.session.set_keyspace(keyspace)
            self.session.execute(SITES_TABLE_DDL)
            self._prepare_statements()
        except Exception as e:
            raise DatabaseError(f"Cannot set up Cassandra keyspace {keyspace}: {e}") from e

        self.logger.info(f"Cassandra metadata store ready (keyspace {keyspace})")

    def _prepare_statements(self):
        self.statements = {
            'select': self.session.prepare("SELECT * FROM sites WHERE url = ?"),
            'insert': self.session.prepare("""
                INSERT INTO sites (url, hash, last_fetched, last_updated, back_link_count, content)
                VALUES (?, ?, ?, ?, ?, ?) IF NOT EXISTS
            """),
            'update_hash': self.session.prepare("""
                UPDATE sites SET hash = ?, last_fetched = ? WHERE url = ? IF hash != ?
            """),
        }

    def _execute(self, statement, params):
        try:
            return self.session.execute(statement, params)
        except Exception as e:
            self.stats['query_errors'] += 1
            raise DatabaseError(f"Cassandra query failed: {e}") from e

    async def get_record(self, key: str) -> Optional[SiteRecord]:
        self.stats['lookups'] += 1
        row = self._execute(self.statements['select'], (key,)).one()
        if not row:
            return None
        return SiteRecord(
            url=row.url,
            content_hash=row.hash,
            last_fetched=row.last_fetched or 0,
            last_updated=row.last_updated or 0,
            back_link_count=row.back_link_count or 0,
            content=row.content
        )

    async def insert_record(self, record: SiteRecord):
        result = self._execute(self.statements['insert'], (
            record.url, record.content_hash, record.last_fetched,
            record.last_updated, record.back_link_count, record.content
        ))
        if not result.was_applied:
            raise DatabaseError(f"Record already exists: {record.url}")
        self.stats['inserts'] += 1

    async def update_record(self, key: str, fields: Dict[str, Any]) -> bool:
        _check_fields(fields)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        query = f"UPDATE sites SET {assignments} WHERE url = %s IF EXISTS"
        result = self._execute(query, (*fields.values(), key))
        if result.was_applied:
            self.stats['updates'] += 1
        return result.was_applied

    async def upsert_hash(self, key: str, content_hash: str, fetched_at: int) -> UpsertOutcome:
        inserted = self._execute(self.statements['insert'], (
            key, content_hash, fetched_at, 0, 0, None
        ))
        if inserted.was_applied:
            self.stats['inserts'] += 1
            return UpsertOutcome.INSERTED

        updated = self._execute(self.statements['update_hash'], (
            content_hash, fetched_at, key, content_hash
        ))
        if updated.was_applied:
            self.stats['updates'] += 1
            return UpsertOutcome.UPDATED
        return UpsertOutcome.UNCHANGED

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra cluster shut down")


class DatabaseManager:
    """Metadata store facade; picks the backend named in the config."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.backend: Optional[StorageBackend] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Create and initialize the configured backend."""
        backend_type = self.config.type.lower()

        if backend_type == 'cassandra':
            self.backend = CassandraStorageBackend(self.config.cassandra)
        elif backend_type == 'file':
            self.backend = FileStorageBackend(self.config.file['data_directory'])
        else:
            raise DatabaseError(f"Unknown database type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Metadata store using {backend_type} backend")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def get_record(self, key: str) -> Optional[SiteRecord]:
        return await self._require_backend().get_record(key)

    async def insert_record(self, record: SiteRecord):
        await self._require_backend().insert_record(record)

    async def update_record(self, key: str, fields: Dict[str, Any]) -> bool:
        return await self._require_backend().update_record(key, fields)

    async def upsert_hash(self, key: str, content_hash: str, fetched_at: int) -> UpsertOutcome:
        return await self._require_backend().upsert_hash(key, content_hash, fetched_at)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._require_backend().get_stats()

    async def close(self):
        if self.backend:
            await self.backend.close()
            self.logger.info("Metadata store closed")
