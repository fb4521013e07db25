import json
import logging
import unittest

from sitecrawler.utils.logger import JSONFormatter, get_crawler_logger
from sitecrawler.utils.monitoring import CrawlerMonitor, MetricsCollector


class TestCrawlerMonitor(unittest.TestCase):

    def setUp(self):
        self.metrics = MetricsCollector()
        self.monitor = CrawlerMonitor(self.metrics)

    def test_counters(self):
        self.monitor.record_fetch(True, 0.2)
        self.monitor.record_fetch(False, 1.0)
        self.monitor.record_upsert('unchanged')
        self.monitor.record_link_published()
        self.monitor.record_link_published()

        self.assertEqual(self.metrics.value('crawler_fetches_total', {'result': 'success'}), 1)
        self.assertEqual(self.metrics.value('crawler_fetches_total', {'result': 'transient_failure'}), 1)
        self.assertEqual(self.metrics.value('crawler_upserts_total', {'outcome': 'unchanged'}), 1)
        self.assertEqual(self.metrics.value('crawler_fetch_duration_seconds_count'), 2)
        self.assertEqual(self.monitor.get_summary()['links_published'], 2)

    def test_queue_depth_gauge(self):
        self.monitor.update_queue_depth('site-fetch', 7)
        self.assertEqual(self.metrics.value('crawler_queue_depth', {'topic': 'site-fetch'}), 7)

    def test_unrecorded_sample_is_zero(self):
        self.assertEqual(self.metrics.value('crawler_dead_letters_total'), 0)

    def test_collectors_are_isolated(self):
        other = MetricsCollector()
        self.monitor.record_retry()
        self.assertEqual(other.value('crawler_retries_total'), 0)


class TestStructuredLogging(unittest.TestCase):

    def test_adapter_context_reaches_json_output(self):
        logger = get_crawler_logger('sitecrawler.test', worker='fetch-worker')

        with self.assertLogs('sitecrawler.test', level='INFO') as captured:
            logger.log_url_event(logging.INFO, "example.com/a", "stored")

        entry = json.loads(JSONFormatter().format(captured.records[0]))
        self.assertEqual(entry['msg'], "stored")
        self.assertEqual(entry['worker'], "fetch-worker")
        self.assertEqual(entry['url'], "example.com/a")
        self.assertEqual(entry['event_type'], "url_event")


if __name__ == '__main__':
    unittest.main()
