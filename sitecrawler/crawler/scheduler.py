"""
Crawler scheduler that wires the components of one worker process and runs
its consume loop.
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from .fetch_worker import FetchWorker
from .fetcher import WebFetcher
from .process_worker import ProcessingWorker
from .retry import RetryCoordinator
from .url_frontier import URLFrontier
from ..storage.blob_store import BlobStore
from ..storage.database import DatabaseManager, StorageError
from ..storage.duplicate_detector import DuplicateDetector
from ..utils.config import Config
from ..utils.monitoring import CrawlerMonitor


ROLES = ('fetch', 'process')


class CrawlerScheduler:
    """
    Owns the clients of one worker process and drives its consume loop.

    Each loop iteration promotes due delayed messages, polls a batch from
    the role's topic partitions and hands the messages to the worker one by
    one. Storage errors and queue errors raised while handling a message stop
    the loop; the failing message and the rest of its batch go back to the
    head of their partitions first. Other per-message errors are logged and
    skipped.
    """

    def __init__(self, config: Config, role: str, monitor: Optional[CrawlerMonitor] = None):
        if role not in ROLES:
            raise ValueError(f"Unknown worker role: {role}")

        self.config = config
        self.role = role
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

        # Components
        self.redis_client: Optional[redis.Redis] = None
        self.frontier: Optional[URLFrontier] = None
        self.database: Optional[DatabaseManager] = None
        self.blob_store: Optional[BlobStore] = None
        self.fetcher: Optional[WebFetcher] = None
        self.worker: Optional[Union[FetchWorker, ProcessingWorker]] = None

        self.is_running = False
        self._stop_requested = False
        self.start_time = time.time()
        self.stats = {
            'batches': 0,
            'messages': 0,
            'errors': 0
        }

    @property
    def topic(self) -> str:
        topics = self.config.queue.topics
        return topics.fetch if self.role == 'fetch' else topics.process

    async def initialize(self, redis_client: Optional[redis.Redis] = None):
        """Initialize all components for this worker's role."""
        try:
            self.redis_client = redis_client or redis.Redis.from_url(
                self.config.queue.url, decode_responses=True
            )
            await self.redis_client.ping()
            self.logger.info("Redis connection established")

            self.frontier = URLFrontier(self.redis_client, self.config.queue)

            self.database = DatabaseManager(self.config.database)
            await self.database.initialize()

            self.blob_store = BlobStore(self.config.blob_store)
            await self.blob_store.initialize()

            worker_config = self.config.worker
            worker_id = f"{self.role}-worker"

            if self.role == 'fetch':
                self.fetcher = WebFetcher(
                    user_agent=worker_config.user_agent,
                    request_timeout=worker_config.request_timeout
                )
                await self.fetcher.start()

                self.worker = FetchWorker(
                    frontier=self.frontier,
                    fetcher=self.fetcher,
                    duplicate_detector=DuplicateDetector(self.database, self.blob_store),
                    retry_coordinator=RetryCoordinator(
                        self.frontier,
                        max_retries=worker_config.max_retries,
                        retry_delay=worker_config.retry_delay
                    ),
                    monitor=self.monitor,
                    worker_id=worker_id
                )
            else:
                self.worker = ProcessingWorker(
                    frontier=self.frontier,
                    database=self.database,
                    blob_store=self.blob_store,
                    link_admission=worker_config.link_admission,
                    monitor=self.monitor,
                    worker_id=worker_id
                )

            self.logger.info(f"Crawler scheduler initialized for role '{self.role}'")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise

    async def add_seed_urls(self, urls: Iterable[str]) -> int:
        """Publish seed URLs to the fetch topic as bare links."""
        count = 0
        for url in urls:
            url = url.strip()
            if not url:
                continue
            await self.frontier.publish_link(url)
            count += 1
        self.logger.info(f"Added {count} seed URLs to the fetch topic")
        return count

    async def consume_once(self) -> int:
        """Run one poll-and-process iteration. Returns the number of messages handled."""
        worker_config = self.config.worker

        try:
            await self.frontier.promote_due()
            claimed = await self.frontier.claim(
                self.topic,
                worker_config.partitions,
                worker_config.batch_size,
                worker_config.poll_timeout
            )
        except RedisError as e:
            self.stats['errors'] += 1
            self.logger.error(f"Failed to poll {self.topic}: {e}")
            await asyncio.sleep(1)
            return 0

        if not claimed:
            return 0

        self.stats['batches'] += 1
        if self.monitor:
            self.monitor.record_consumed(self.topic, len(claimed))

        handled = 0
        for index, (_, payload) in enumerate(claimed):
            if self._stop_requested:
                await self._requeue(claimed[index:])
                break

            self.logger.debug(f"Received record: {payload}")
            try:
                await self.worker.handle_message(payload)
            except (StorageError, RedisError):
                # the failing message is retried on restart
                await self._requeue(claimed[index:])
                raise
            except Exception as e:
                self.stats['errors'] += 1
                self.logger.error(f"Error handling message {payload!r}: {e}", exc_info=True)
            self.stats['messages'] += 1
            handled += 1

        return handled

    async def _requeue(self, claimed):
        try:
            await self.frontier.requeue(claimed)
        except RedisError as e:
            self.logger.error(f"Lost {len(claimed)} unhandled {self.topic} messages: {e}")

    async def start_crawling(self):
        """Run the consume loop until stopped or a fatal error occurs."""
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return

        self.is_running = True
        self._stop_requested = False
        self.start_time = time.time()
        stats_task = asyncio.create_task(self._stats_reporter())
        self.logger.info(f"Consuming {self.topic} partitions {self.config.worker.partitions}")

        try:
            while self.is_running:
                await self.consume_once()
        finally:
            self.is_running = False
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)
            try:
                await self._log_current_stats()
            except RedisError as e:
                self.logger.error(f"Could not report final stats: {e}")

    async def _stats_reporter(self):
        """Periodically log worker statistics."""
        while self.is_running:
            await asyncio.sleep(self.config.worker.stats_interval)
            try:
                await self._log_current_stats()
            except RedisError as e:
                self.logger.error(f"Error in stats reporter: {e}")

    async def _log_current_stats(self):
        frontier_stats = await self.frontier.get_stats()
        if self.monitor:
            topics = self.config.queue.topics
            self.monitor.update_queue_depth(topics.fetch, frontier_stats['fetch_queued'])
            self.monitor.update_queue_depth(topics.process, frontier_stats['process_queued'])
            self.logger.debug(f"Metrics summary: {self.monitor.get_summary()}")

        elapsed = time.time() - self.start_time
        self.logger.info(
            f"Worker progress ({self.role}): "
            f"Messages={self.stats['messages']}, "
            f"Errors={self.stats['errors']}, "
            f"Worker={self.worker.get_stats()}, "
            f"Frontier={frontier_stats}, "
            f"Elapsed={elapsed:.0f}s"
        )

    def stop_crawling(self):
        """Stop the consume loop after the current message; the rest of its batch is requeued."""
        self.logger.info(f"Stopping {self.role} worker")
        self._stop_requested = True
        self.is_running = False

    async def close(self):
        """Close all connections and cleanup resources."""
        if self.fetcher:
            await self.fetcher.close()

        if self.blob_store:
            await self.blob_store.close()

        if self.database:
            await self.database.close()

        if self.redis_client:
            await self.redis_client.aclose()

        self.logger.info("Crawler scheduler closed")

    def get_stats(self) -> Dict:
        """Get current worker statistics."""
        return {
            **self.stats,
            'role': self.role,
            'worker': self.worker.get_stats() if self.worker else {},
            'is_running': self.is_running
        }
