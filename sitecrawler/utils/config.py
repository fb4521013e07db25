"""
Worker configuration: a YAML file, then environment overrides.

The ``worker`` and ``queue`` sections are optional and fall back to the
defaults below; the store, logging and monitoring sections must be present.
A ``.env`` file in the working directory is loaded before the environment is
read, so deployments can keep connection settings out of the YAML.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv


LINK_ADMISSION_POLICIES = ('store', 'page')
DATABASE_TYPES = ('cassandra', 'file')
BLOB_STORE_TYPES = ('s3', 'file')


@dataclass
class WorkerConfig:
    """Consume loop and per-message behaviour of one worker."""
    batch_size: int = 50
    poll_timeout: float = 1.0
    partitions: List[int] = field(default_factory=lambda: [0])
    max_retries: int = 5
    retry_delay: float = 5.0
    request_timeout: int = 30
    user_agent: str = "sitecrawler/1.0"
    link_admission: str = "store"
    stats_interval: int = 30


@dataclass
class TopicsConfig:
    fetch: str = "site-fetch"
    process: str = "site-process"
    dead_letter: str = "site-fetch-dlq"


@dataclass
class QueueConfig:
    """Redis connection and topic layout."""
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "crawler"
    partitions: int = 1
    topics: TopicsConfig = field(default_factory=TopicsConfig)


@dataclass
class DatabaseConfig:
    """Metadata store: backend name plus per-backend settings."""
    type: str
    cassandra: Dict[str, Any]
    file: Dict[str, Any]


@dataclass
class BlobStoreConfig:
    """Page blob store: backend name plus per-backend settings."""
    type: str
    s3: Dict[str, Any]
    file: Dict[str, Any]


@dataclass
class LoggingConfig:
    level: str
    file: str
    format: str
    json: bool = False


@dataclass
class MonitoringConfig:
    prometheus_port: int
    metrics_enabled: bool


@dataclass
class Config:
    worker: WorkerConfig
    queue: QueueConfig
    database: DatabaseConfig
    blob_store: BlobStoreConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig


# Environment variable -> (section, key)
ENV_OVERRIDES = {
    'REDIS_URL': ('queue', 'url'),
    'CRAWLER_TOPIC_FETCH': ('topics', 'fetch'),
    'CRAWLER_TOPIC_PROCESS': ('topics', 'process'),
    'CRAWLER_TOPIC_DLQ': ('topics', 'dead_letter'),
    'CRAWLER_DB_TYPE': ('database', 'type'),
    'CASSANDRA_HOSTS': ('cassandra', 'hosts'),
    'CASSANDRA_KEYSPACE': ('cassandra', 'keyspace'),
    'CRAWLER_BLOB_TYPE': ('blob_store', 'type'),
    'S3_BUCKET_NAME': ('s3', 'bucket'),
    'S3_ENDPOINT_URL': ('s3', 'endpoint_url'),
    'AWS_REGION': ('s3', 'region'),
    'CRAWLER_LOG_LEVEL': ('logging', 'level'),
}


def _backend_settings(data: Mapping[str, Any], name: str) -> Dict[str, Any]:
    return dict(data.get(name) or {})


class ConfigManager:
    """Builds a validated ``Config`` from one YAML file."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Parse the file, apply environment overrides and validate."""
        if not self.config_path.is_file():
            raise FileNotFoundError(f"No configuration file at {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        load_dotenv()

        self._config = self._build(data)
        self._apply_env_overrides(os.environ)
        self._validate_config()
        return self._config

    @staticmethod
    def _build(data: Dict[str, Any]) -> Config:
        queue_data = dict(data.get('queue') or {})
        topics = TopicsConfig(**(queue_data.pop('topics', None) or {}))

        database = data['database']
        blob_store = data['blob_store']

        return Config(
            worker=WorkerConfig(**(data.get('worker') or {})),
            queue=QueueConfig(topics=topics, **queue_data),
            database=DatabaseConfig(
                type=database['type'],
                cassandra=_backend_settings(database, 'cassandra'),
                file=_backend_settings(database, 'file')
            ),
            blob_store=BlobStoreConfig(
                type=blob_store['type'],
                s3=_backend_settings(blob_store, 's3'),
                file=_backend_settings(blob_store, 'file')
            ),
            logging=LoggingConfig(**data['logging']),
            monitoring=MonitoringConfig(**data['monitoring'])
        )

    def _apply_env_overrides(self, environ: Mapping[str, str]):
        """Non-empty variables from ``ENV_OVERRIDES`` replace file values."""
        config = self._config
        targets = {
            'queue': config.queue,
            'topics': config.queue.topics,
            'database': config.database,
            'cassandra': config.database.cassandra,
            'blob_store': config.blob_store,
            's3': config.blob_store.s3,
            'logging': config.logging,
        }

        for variable, (section, key) in ENV_OVERRIDES.items():
            value: Any = environ.get(variable)
            if not value:
                continue
            if variable == 'CASSANDRA_HOSTS':
                value = [host.strip() for host in value.split(',') if host.strip()]

            target = targets[section]
            if isinstance(target, dict):
                target[key] = value
            else:
                setattr(target, key, value)
            logging.debug(f"{section}.{key} set from ${variable}")

    def _validate_config(self):
        """Raise ValueError on the first setting a worker could not run with."""
        config = self._config
        worker, queue = config.worker, config.queue

        if worker.batch_size < 1:
            raise ValueError("worker.batch_size must be at least 1")
        if worker.poll_timeout < 0:
            raise ValueError("worker.poll_timeout must be non-negative")
        if worker.max_retries < 0:
            raise ValueError("worker.max_retries must be non-negative")
        if worker.retry_delay < 0:
            raise ValueError("worker.retry_delay must be non-negative")
        if worker.link_admission not in LINK_ADMISSION_POLICIES:
            raise ValueError(f"worker.link_admission must be one of {LINK_ADMISSION_POLICIES}")

        if queue.partitions < 1:
            raise ValueError("queue.partitions must be at least 1")
        if not worker.partitions:
            raise ValueError("worker.partitions must name at least one partition")
        for partition in worker.partitions:
            if not 0 <= partition < queue.partitions:
                raise ValueError(f"worker partition {partition} outside 0..{queue.partitions - 1}")

        if config.database.type not in DATABASE_TYPES:
            raise ValueError(f"database.type must be one of {DATABASE_TYPES}")
        if config.blob_store.type not in BLOB_STORE_TYPES:
            raise ValueError(f"blob_store.type must be one of {BLOB_STORE_TYPES}")
        if config.blob_store.type == 's3' and not config.blob_store.s3.get('bucket'):
            raise ValueError("blob_store.s3.bucket is required for the s3 blob store")

        logging.debug(f"Configuration {self.config_path} is valid")


def load_config(config_path: str = "config.yaml") -> Config:
    """Load and validate the configuration at ``config_path``."""
    return ConfigManager(config_path).load_config()
