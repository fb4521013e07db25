import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from fakeredis import FakeServer, aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from sitecrawler.crawler.fetch_worker import FetchWorker
from sitecrawler.crawler.process_worker import ProcessingWorker
from sitecrawler.crawler.scheduler import CrawlerScheduler
from sitecrawler.storage.blob_store import BlobStoreError
from sitecrawler.utils.config import (
    BlobStoreConfig,
    Config,
    DatabaseConfig,
    LoggingConfig,
    MonitoringConfig,
    QueueConfig,
    WorkerConfig,
)
from sitecrawler.utils.monitoring import CrawlerMonitor, MetricsCollector


def make_config(data_directory: str) -> Config:
    return Config(
        worker=WorkerConfig(poll_timeout=0, batch_size=10),
        queue=QueueConfig(),
        database=DatabaseConfig(type='file', cassandra={}, file={'data_directory': f"{data_directory}/meta"}),
        blob_store=BlobStoreConfig(type='file', s3={}, file={'data_directory': f"{data_directory}/blobs"}),
        logging=LoggingConfig(level='INFO', file=f"{data_directory}/crawler.log", format='%(message)s'),
        monitoring=MonitoringConfig(prometheus_port=8000, metrics_enabled=False)
    )


class TestCrawlerScheduler(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.config = make_config(tmp.name)
        self.metrics = MetricsCollector()

    async def _scheduler(self, role):
        scheduler = CrawlerScheduler(self.config, role, CrawlerMonitor(self.metrics))
        await scheduler.initialize(redis_client=aioredis.FakeRedis(server=FakeServer(), decode_responses=True))
        self.addAsyncCleanup(scheduler.close)
        return scheduler

    async def test_role_selects_worker_and_topic(self):
        fetch = await self._scheduler('fetch')
        process = await self._scheduler('process')

        self.assertIsInstance(fetch.worker, FetchWorker)
        self.assertEqual(fetch.topic, "site-fetch")
        self.assertIsInstance(process.worker, ProcessingWorker)
        self.assertEqual(process.topic, "site-process")

    def test_unknown_role(self):
        with self.assertRaises(ValueError):
            CrawlerScheduler(self.config, 'index')

    async def test_seed_urls_land_on_fetch_topic(self):
        scheduler = await self._scheduler('fetch')

        count = await scheduler.add_seed_urls(["https://example.com", " ", "example.org/a"])

        self.assertEqual(count, 2)
        self.assertEqual(await scheduler.frontier.topic_depth("site-fetch"), 2)

    async def test_consume_once_processes_a_stored_page(self):
        scheduler = await self._scheduler('process')
        await scheduler.database.upsert_hash("example.com/index", "h", 100)
        await scheduler.blob_store.put_blob("example.com/index", b'<a href="/next">next</a>')
        await scheduler.frontier.publish_process("example.com/index")

        handled = await scheduler.consume_once()

        self.assertEqual(handled, 1)
        self.assertEqual(
            await scheduler.frontier.poll("site-fetch", [0], batch_size=10), ["example.com/next"]
        )
        self.assertEqual(self.metrics.value('crawler_messages_consumed_total', {'topic': 'site-process'}), 1)

    async def test_consume_once_promotes_due_retries(self):
        scheduler = await self._scheduler('fetch')
        scheduler.worker.handle_message = AsyncMock()
        await scheduler.frontier.schedule(
            "site-fetch", '{"link": "https://example.com", "retry_count": 1}', delay=0, now=0.0
        )

        handled = await scheduler.consume_once()

        self.assertEqual(handled, 1)
        scheduler.worker.handle_message.assert_awaited_once_with(
            '{"link": "https://example.com", "retry_count": 1}'
        )

    async def test_empty_poll(self):
        scheduler = await self._scheduler('process')
        self.assertEqual(await scheduler.consume_once(), 0)

    async def test_unexpected_message_error_is_logged_and_skipped(self):
        scheduler = await self._scheduler('process')
        scheduler.worker.handle_message = AsyncMock(side_effect=[RuntimeError("bad page"), None])
        await scheduler.frontier.publish_process("example.com/a")
        await scheduler.frontier.publish_process("example.com/b")

        with self.assertLogs('sitecrawler.crawler.scheduler', level='ERROR'):
            handled = await scheduler.consume_once()

        self.assertEqual(handled, 2)
        self.assertEqual(scheduler.stats['errors'], 1)
        self.assertEqual(scheduler.stats['messages'], 2)

    async def test_stop_request_ends_the_loop(self):
        scheduler = await self._scheduler('process')

        async def handle(payload):
            scheduler.stop_crawling()

        scheduler.worker.handle_message = AsyncMock(side_effect=handle)
        await scheduler.frontier.publish_process("example.com/a")

        await scheduler.start_crawling()

        self.assertFalse(scheduler.is_running)
        self.assertEqual(scheduler.stats['messages'], 1)

    async def test_stop_request_returns_rest_of_batch(self):
        scheduler = await self._scheduler('process')

        async def handle(payload):
            scheduler.stop_crawling()

        scheduler.worker.handle_message = AsyncMock(side_effect=handle)
        for key in ("example.com/a", "example.com/b", "example.com/c"):
            await scheduler.frontier.publish_process(key)

        await scheduler.start_crawling()

        scheduler.worker.handle_message.assert_awaited_once_with("example.com/a")
        self.assertEqual(
            await scheduler.frontier.poll("site-process", [0], batch_size=10),
            ["example.com/b", "example.com/c"]
        )

    async def test_storage_error_stops_the_loop(self):
        scheduler = await self._scheduler('process')
        scheduler.worker.handle_message = AsyncMock(side_effect=BlobStoreError("bucket gone"))
        await scheduler.frontier.publish_process("example.com/a")

        with self.assertRaises(BlobStoreError):
            await scheduler.start_crawling()
        self.assertFalse(scheduler.is_running)

    async def test_fatal_error_returns_unhandled_messages_in_order(self):
        scheduler = await self._scheduler('process')
        scheduler.worker.handle_message = AsyncMock(side_effect=[None, BlobStoreError("bucket gone")])
        for key in ("example.com/a", "example.com/b", "example.com/c"):
            await scheduler.frontier.publish_process(key)

        with self.assertRaises(BlobStoreError):
            await scheduler.consume_once()

        self.assertEqual(
            await scheduler.frontier.poll("site-process", [0], batch_size=10),
            ["example.com/b", "example.com/c"]
        )
        self.assertEqual(scheduler.stats['messages'], 1)

    async def test_returned_messages_go_ahead_of_newer_ones(self):
        scheduler = await self._scheduler('process')
        await scheduler.frontier.publish_process("example.com/a")

        async def fail(payload):
            await scheduler.frontier.publish_process("example.com/new")
            raise RedisConnectionError("down")

        scheduler.worker.handle_message = AsyncMock(side_effect=fail)

        with self.assertRaises(RedisConnectionError):
            await scheduler.consume_once()

        self.assertEqual(
            await scheduler.frontier.poll("site-process", [0], batch_size=10),
            ["example.com/a", "example.com/new"]
        )

    async def test_final_stats_failure_keeps_the_original_error(self):
        scheduler = await self._scheduler('process')
        scheduler.worker.handle_message = AsyncMock(side_effect=RedisConnectionError("handler lost redis"))
        scheduler.frontier.get_stats = AsyncMock(side_effect=RedisConnectionError("stats lost redis"))
        await scheduler.frontier.publish_process("example.com/a")

        with self.assertLogs('sitecrawler.crawler.scheduler', level='ERROR'):
            with self.assertRaises(RedisConnectionError) as ctx:
                await scheduler.start_crawling()

        self.assertEqual(str(ctx.exception), "handler lost redis")

    async def test_queue_error_while_polling_backs_off(self):
        scheduler = await self._scheduler('process')
        scheduler.frontier.claim = AsyncMock(side_effect=RedisConnectionError("down"))

        with patch('sitecrawler.crawler.scheduler.asyncio.sleep', new=AsyncMock()) as sleep:
            handled = await scheduler.consume_once()

        self.assertEqual(handled, 0)
        sleep.assert_awaited_once_with(1)
        self.assertEqual(scheduler.stats['errors'], 1)


if __name__ == '__main__':
    unittest.main()
