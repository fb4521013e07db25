import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from fakeredis import FakeServer, aioredis

from sitecrawler.crawler.fetch_worker import FetchWorker
from sitecrawler.crawler.fetcher import FetchResult
from sitecrawler.crawler.retry import CrawlState, RetryCoordinator
from sitecrawler.crawler.url_frontier import CrawlMessage, URLFrontier
from sitecrawler.storage.blob_store import BlobStore, BlobStoreError
from sitecrawler.storage.database import DatabaseError, DatabaseManager
from sitecrawler.storage.duplicate_detector import DuplicateDetector, hash_content
from sitecrawler.utils.config import BlobStoreConfig, DatabaseConfig, QueueConfig
from sitecrawler.utils.monitoring import CrawlerMonitor, MetricsCollector


def ok(url, body=b"<html>page</html>"):
    return FetchResult(url=url, status_code=200, content=body)


class TestFetchWorker(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)

        self.redis = aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
        self.frontier = URLFrontier(self.redis, QueueConfig())

        self.database = DatabaseManager(DatabaseConfig(
            type='file', cassandra={}, file={'data_directory': f"{tmp.name}/meta"}
        ))
        await self.database.initialize()
        self.blob_store = BlobStore(BlobStoreConfig(
            type='file', s3={}, file={'data_directory': f"{tmp.name}/blobs"}
        ))
        await self.blob_store.initialize()

        self.fetcher = AsyncMock()
        self.fetcher.fetch.side_effect = lambda url: ok(url)
        self.metrics = MetricsCollector()
        self.worker = FetchWorker(
            frontier=self.frontier,
            fetcher=self.fetcher,
            duplicate_detector=DuplicateDetector(self.database, self.blob_store),
            retry_coordinator=RetryCoordinator(self.frontier, max_retries=5, retry_delay=5.0),
            monitor=CrawlerMonitor(self.metrics)
        )

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def _process_topic(self):
        return await self.frontier.poll("site-process", [0], batch_size=100)

    async def _writes(self):
        db_stats = await self.database.get_stats()
        blob_stats = await self.blob_store.get_stats()
        return db_stats['inserts'] + db_stats['updates'] + blob_stats['blobs_written']

    async def test_new_page_is_stored_and_queued_for_processing(self):
        state = await self.worker.handle_message('{"link": "https://example.com/a?x=1", "retry_count": 0}')

        self.assertIs(state, CrawlState.SUCCEEDED)
        self.fetcher.fetch.assert_awaited_once_with("https://example.com/a?x=1")
        record = await self.database.get_record("example.com/a")
        self.assertEqual(record.content_hash, hash_content(b"<html>page</html>"))
        self.assertEqual(await self.blob_store.get_blob("example.com/a"), b"<html>page</html>")
        self.assertEqual(await self._process_topic(), ["example.com/a"])
        self.assertEqual(self.metrics.value('crawler_upserts_total', {'outcome': 'inserted'}), 1)

    async def test_bare_scheme_less_link_is_fetched_over_https(self):
        await self.worker.handle_message("example.com/foo")

        self.fetcher.fetch.assert_awaited_once_with("https://example.com/foo")
        self.assertIsNotNone(await self.database.get_record("example.com/foo"))

    async def test_unchanged_page_writes_nothing(self):
        await self.worker.handle_message("https://example.com/a")
        await self._process_topic()
        writes = await self._writes()

        state = await self.worker.handle_message("http://example.com/a?ref=2")

        self.assertIs(state, CrawlState.SUCCEEDED)
        self.assertEqual(await self._writes(), writes)
        self.assertEqual(await self._process_topic(), [])
        self.assertEqual(self.worker.get_stats()['unchanged'], 1)

    async def test_changed_page_is_updated_and_requeued(self):
        await self.worker.handle_message("https://example.com/a")
        await self._process_topic()
        self.fetcher.fetch.side_effect = lambda url: ok(url, b"<html>new</html>")

        await self.worker.handle_message("https://example.com/a")

        record = await self.database.get_record("example.com/a")
        self.assertEqual(record.content_hash, hash_content(b"<html>new</html>"))
        self.assertEqual(await self._process_topic(), ["example.com/a"])

    async def test_page_is_queued_once_its_lost_blob_is_written(self):
        with patch.object(self.blob_store, 'put_blob', side_effect=BlobStoreError("bucket gone")):
            with self.assertRaises(BlobStoreError):
                await self.worker.handle_message("https://example.com/a")
        self.assertEqual(await self._process_topic(), [])

        state = await self.worker.handle_message("https://example.com/a")

        self.assertIs(state, CrawlState.SUCCEEDED)
        self.assertEqual(await self.blob_store.get_blob("example.com/a"), b"<html>page</html>")
        self.assertEqual(await self._process_topic(), ["example.com/a"])

    async def test_non_404_error_status_is_stored(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(url=url, status_code=500, content=b"oops")

        state = await self.worker.handle_message("https://example.com/a")

        self.assertIs(state, CrawlState.SUCCEEDED)
        self.assertEqual(await self.blob_store.get_blob("example.com/a"), b"oops")

    async def test_transient_failure_schedules_retry(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(url=url, status_code=0, error="Request timeout")

        state = await self.worker.handle_message("https://example.com/a")

        self.assertIs(state, CrawlState.RETRYING)
        self.assertEqual(await self._process_topic(), [])
        self.assertIsNone(await self.database.get_record("example.com/a"))

        delayed = await self.redis.zrange(self.frontier.delayed_key, 0, -1, withscores=True)
        self.assertEqual(len(delayed), 1)
        await self.frontier.promote_due(now=delayed[0][1])
        messages = await self.frontier.poll("site-fetch", [0], batch_size=10)
        self.assertEqual(CrawlMessage.decode(messages[0]), CrawlMessage("https://example.com/a", 1))

    async def test_not_found_is_retried(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(url=url, status_code=404, content=b"")

        state = await self.worker.handle_message("https://example.com/a")

        self.assertIs(state, CrawlState.RETRYING)

    async def test_exhausted_retries_go_to_dead_letter_topic(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(url=url, status_code=0, error="Request timeout")

        state = await self.worker.handle_message('{"link": "https://example.com/a", "retry_count": 5}')

        self.assertIs(state, CrawlState.DEAD_LETTERED)
        self.assertEqual(await self.frontier.poll("site-fetch-dlq", [0], batch_size=10), ["https://example.com/a"])
        self.assertEqual(await self.redis.zcard(self.frontier.delayed_key), 0)
        self.assertEqual(self.metrics.value('crawler_dead_letters_total'), 1)

    async def test_malformed_message_is_dropped(self):
        state = await self.worker.handle_message('{"retry_count": 1}')

        self.assertIsNone(state)
        self.fetcher.fetch.assert_not_awaited()
        self.assertEqual(self.worker.get_stats()['dropped'], 1)
        self.assertEqual(
            self.metrics.value('crawler_messages_dropped_total', {'reason': 'malformed_message'}), 1
        )

    async def test_unparseable_link_is_dropped(self):
        state = await self.worker.handle_message("http://exa mple.com/")

        self.assertIsNone(state)
        self.fetcher.fetch.assert_not_awaited()

    async def test_non_web_link_is_dropped_without_retry(self):
        for link in ["mailto:bob@example.org", "javascript:void(0)", "tel:+15551234"]:
            self.assertIsNone(await self.worker.handle_message(link), msg=link)

        self.fetcher.fetch.assert_not_awaited()
        self.assertEqual(await self.redis.zcard(self.frontier.delayed_key), 0)
        self.assertEqual(self.worker.get_stats()['dropped'], 3)

    async def test_url_rejected_by_fetcher_is_dropped_without_retry(self):
        self.fetcher.fetch.side_effect = lambda url: FetchResult(
            url=url, status_code=0, error="invalid URL", invalid_url=True
        )

        state = await self.worker.handle_message("https://example.com:99999/a")

        self.assertIsNone(state)
        self.assertEqual(await self.redis.zcard(self.frontier.delayed_key), 0)
        self.assertEqual(await self.frontier.poll("site-fetch-dlq", [0], batch_size=10), [])
        self.assertIsNone(await self.database.get_record("example.com:99999/a"))
        self.assertEqual(
            self.metrics.value('crawler_messages_dropped_total', {'reason': 'invalid_link'}), 1
        )

    async def test_storage_error_propagates(self):
        detector = AsyncMock()
        detector.upsert_if_changed.side_effect = DatabaseError("store unavailable")
        self.worker.duplicate_detector = detector

        with self.assertRaises(DatabaseError):
            await self.worker.handle_message("https://example.com/a")
        self.assertEqual(await self._process_topic(), [])


if __name__ == '__main__':
    unittest.main()
