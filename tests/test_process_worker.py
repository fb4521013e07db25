import tempfile
import unittest

from fakeredis import FakeServer, aioredis

from sitecrawler.crawler.process_worker import ProcessingWorker
from sitecrawler.storage.blob_store import BlobStore
from sitecrawler.storage.database import DatabaseManager, RecordNotFoundError
from sitecrawler.utils.config import BlobStoreConfig, DatabaseConfig, QueueConfig
from sitecrawler.crawler.url_frontier import URLFrontier


PAGE = (b'<html><head><title>Home</title><script>track()</script></head>'
        b'<body><p>Hello<br>World</p>'
        b'<a href="/foo">foo</a><a href="./bar">bar</a><a href="http://other.com/x">x</a>'
        b'<a href="/foo">foo again</a><a href="">empty</a>'
        b'</body></html>')


class TestProcessingWorker(unittest.IsolatedAsyncioTestCase):

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

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def _store_page(self, key, body=PAGE):
        await self.database.upsert_hash(key, "hash", 100)
        await self.blob_store.put_blob(key, body)

    async def _fetch_topic(self):
        return await self.frontier.poll("site-fetch", [0], batch_size=100)

    def _worker(self, link_admission='store'):
        return ProcessingWorker(self.frontier, self.database, self.blob_store, link_admission=link_admission)

    async def test_links_published_and_text_stored(self):
        await self._store_page("example.com/index")

        result = await self._worker().handle_message("example.com/index")

        self.assertEqual(await self._fetch_topic(), [
            "example.com/foo", "example.com/bar", "http://other.com/x", "example.com/foo"
        ])
        record = await self.database.get_record("example.com/index")
        self.assertIn("Hello", record.content)
        self.assertIn("World", record.content)
        self.assertNotIn("track()", record.content)
        self.assertGreater(record.last_updated, 0)
        self.assertEqual(record.content, result.text)
        self.assertFalse(result.truncated)

    async def test_page_admission_skips_repeats_within_a_page(self):
        await self._store_page("example.com/index")

        await self._worker('page').handle_message("example.com/index")

        self.assertEqual(await self._fetch_topic(), [
            "example.com/foo", "example.com/bar", "http://other.com/x"
        ])

    async def test_relative_links_on_host_only_key(self):
        await self._store_page("example.com", b'<a href="/about">about</a>')

        await self._worker().handle_message("example.com")

        self.assertEqual(await self._fetch_topic(), ["example.com/about"])

    async def test_missing_blob_is_skipped(self):
        worker = self._worker()

        result = await worker.handle_message("example.com/never-fetched")

        self.assertIsNone(result)
        self.assertEqual(worker.get_stats()['skipped'], 1)
        self.assertEqual(await self._fetch_topic(), [])

    async def test_empty_key_is_skipped(self):
        self.assertIsNone(await self._worker().handle_message("  "))

    async def test_missing_record_raises(self):
        await self.blob_store.put_blob("example.com/orphan", PAGE)

        with self.assertRaises(RecordNotFoundError):
            await self._worker().handle_message("example.com/orphan")

    async def test_processing_does_not_touch_hash(self):
        await self._store_page("example.com/index")

        await self._worker().handle_message("example.com/index")

        record = await self.database.get_record("example.com/index")
        self.assertEqual(record.content_hash, "hash")
        self.assertEqual(record.last_fetched, 100)

    def test_unknown_admission_policy(self):
        with self.assertRaises(ValueError):
            self._worker('global')


if __name__ == '__main__':
    unittest.main()
